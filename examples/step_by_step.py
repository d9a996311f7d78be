from __future__ import annotations

import argparse
import base64
import hashlib
import sys
from pathlib import Path

if __package__ in (None, ""):
    repo_src = Path(__file__).resolve().parents[1] / "src"
    if str(repo_src) not in sys.path:
        sys.path.insert(0, str(repo_src))

try:
    from pkcs11 import Attribute, ObjectClass

    from hsm_signing import (
        HsmSigningError,
        Pkcs11Token,
        SigningDemoConfig,
        assert_private_key_protected,
        configure_logging,
        decode_public_key,
        describe_object,
        digest_file,
        discover,
        fetch_public_key,
        find_key,
        sign_digest,
        verify,
    )
except ModuleNotFoundError as exc:
    if exc.name in {"pkcs11", "asn1crypto", "cryptography"}:
        raise SystemExit(
            f"Missing dependency: {exc.name}\n"
            "Install it with:\n"
            "  python3 -m pip install -e ."
        ) from exc
    raise


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Walk through the signing workflow one call at a time "
            "against the token configured through HSM_* environment variables."
        )
    )
    parser.add_argument(
        "--message",
        default=None,
        help="Sign this text instead of the HSM_INPUT_FILE contents.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    try:
        configure_logging()
        config = SigningDemoConfig.from_env()
        with Pkcs11Token(config) as token:
            session = token.session

            # 1) Enumerate everything the session can see.
            for obj in discover(session):
                info = describe_object(obj)
                print(f"Object {info.handle}: {info.object_class} {info.label!r}")

            # 2) The private key must stay inside the token.
            private_key = find_key(session, ObjectClass.PRIVATE_KEY, config.key_label)
            assert_private_key_protected(private_key)
            print(f"Private key {private_key.handle} value is not readable.")

            # 3) Public key, in whatever encoding the token uses.
            public_object = find_key(session, ObjectClass.PUBLIC_KEY, config.key_label)
            raw_public = fetch_public_key(public_object)
            public_key = decode_public_key(
                raw_public, ec_params=public_object[Attribute.EC_PARAMS]
            )
            print(f"Public key ({public_key.curve.name}): {raw_public.hex()}")

            # 4) Hash locally, sign on the token.
            if args.message is not None:
                digest = hashlib.sha256(args.message.encode("utf-8")).digest()
            else:
                digest = digest_file(config.input_file)
            signature = sign_digest(private_key, digest, curve=public_key.curve)
            print(f"Signature: {base64.b64encode(signature).decode('ascii')}")

        # 5) Verification needs nothing from the token.
        print(f"Verified: {verify(public_key, digest, signature)}")
        return 0
    except (HsmSigningError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

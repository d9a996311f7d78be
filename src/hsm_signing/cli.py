from __future__ import annotations

import argparse
import base64
import sys
from pathlib import Path

from .config import SigningDemoConfig
from .ec_keys import decode_public_key
from .exceptions import (
    HsmConfigurationError,
    HsmOperationError,
    IntegrityViolation,
    PublicKeyDecodeError,
)
from .logging_utils import configure_logging
from .workflow import WorkflowResult, run_workflow, verify

EXIT_VERIFIED = 0
EXIT_NOT_VERIFIED = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_HSM_ERROR = 3
EXIT_INTEGRITY_VIOLATION = 4

HELP_EPILOG = """Environment:
  HSM_PKCS11_MODULE       PKCS#11 module path
  HSM_AUTH_KEY_ID         auth key identifier, prefixed to the password to form the PIN
  HSM_AUTH_KEY_PASSWORD   auth key password (never taken from the command line)
  HSM_KEY_LABEL           label shared by the private and public key objects
  HSM_INPUT_FILE          file whose SHA-256 digest is signed
  HSM_TOKEN_LABEL         select the token by label instead of slot index
  HSM_SLOT_INDEX          index into the slots that have a token present

Exit status:
  0 signature verified, 1 signature did not verify, 2 configuration error,
  3 HSM operation error, 4 private key material was readable
"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hsm-signing-demo",
        description=(
            "Log in to a PKCS#11 token, list its objects, check that the private key "
            "cannot be read, sign a file digest on the token and verify it locally."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    parser.add_argument("--module", dest="module_path", default=None, help="PKCS#11 module path.")
    parser.add_argument("--auth-key-id", default=None, help="Auth key identifier, e.g. 0001.")
    parser.add_argument("--key-label", default=None, help="Label of the signing keypair.")
    parser.add_argument(
        "--input",
        dest="input_file",
        default=None,
        help="File whose SHA-256 digest is signed.",
    )
    parser.add_argument("--token-label", default=None, help="Token label to select.")
    parser.add_argument(
        "--slot-index",
        type=int,
        default=None,
        help="Index into slots with a token present (default 0).",
    )
    parser.add_argument(
        "--verify-against",
        default=None,
        help="PEM or DER public key file to check the signature against as well.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON instead of the human-readable report.",
    )
    parser.add_argument("--out", default=None, help="Also write the JSON result to this path.")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Mirror log records to stderr.",
    )
    return parser.parse_args(argv)


def _print_report(result: WorkflowResult) -> None:
    if result.token_label:
        print(f"Token: {result.token_label}")
    print(f"Objects on token: {len(result.objects)}")
    for item in result.objects:
        print(
            f"  handle={item.handle} class={item.object_class or '?'} "
            f"label={item.label if item.label is not None else '?'}"
        )
    print(f"Key label: {result.key_label} ({result.curve_name})")
    print(f"Public key (hex): {result.public_key_der.hex()}")
    print(f"Public key (base64): {base64.b64encode(result.public_key_der).decode('ascii')}")
    print(f"Digest (sha256): {result.digest.hex()}")
    print(f"Signature (hex): {result.signature.hex()}")
    print(f"Signature (base64): {base64.b64encode(result.signature).decode('ascii')}")
    print(f"Signature verified: {result.verified}")


def _write_json(result: WorkflowResult, out_path: str) -> None:
    path = Path(out_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(result.to_json() + "\n", encoding="utf-8")
    print(f"Wrote result to: {path}", file=sys.stderr)


def _verify_against(result: WorkflowResult, key_path: str) -> bool:
    path = Path(key_path)
    if not path.is_file():
        raise HsmConfigurationError(f"Public key file does not exist: {path}")
    try:
        other_key = decode_public_key(path.read_bytes())
    except PublicKeyDecodeError as exc:
        raise HsmConfigurationError(f"Cannot read public key file {path}: {exc}") from exc
    return verify(other_key, result.digest, result.signature)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(console=args.verbose)
        config = SigningDemoConfig.from_env(
            module_path=args.module_path,
            auth_key_id=args.auth_key_id,
            key_label=args.key_label,
            input_file=args.input_file,
            token_label=args.token_label,
            slot_index=args.slot_index,
        )
        result = run_workflow(config)

        if args.json:
            print(result.to_json())
        else:
            _print_report(result)
        if args.out:
            _write_json(result, args.out)

        if args.verify_against:
            other_verified = _verify_against(result, args.verify_against)
            print(f"Signature verified against {args.verify_against}: {other_verified}")
    except IntegrityViolation as exc:
        print(f"INTEGRITY VIOLATION: {exc}", file=sys.stderr)
        return EXIT_INTEGRITY_VIOLATION
    except (HsmConfigurationError, ValueError, OSError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIGURATION_ERROR
    except HsmOperationError as exc:
        print(f"HSM error: {exc}", file=sys.stderr)
        return EXIT_HSM_ERROR

    return EXIT_VERIFIED if result.verified else EXIT_NOT_VERIFIED


if __name__ == "__main__":
    raise SystemExit(main())

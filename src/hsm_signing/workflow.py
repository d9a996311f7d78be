from __future__ import annotations

import base64
import hashlib
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

import pkcs11
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils
from pkcs11 import Attribute, Mechanism, ObjectClass

from .config import SigningDemoConfig
from .ec_keys import (
    coordinate_size,
    curve_from_ec_params,
    decode_public_key,
    normalize_raw_signature,
    public_key_info_from_params,
    raw_to_der_signature,
)
from .exceptions import (
    DiscoveryError,
    HsmConfigurationError,
    HsmOperationError,
    IntegrityViolation,
    KeyNotFoundError,
    PublicKeyDecodeError,
    SigningError,
)
from .token import Pkcs11Token, format_exception

_logger = logging.getLogger("hsm_signing.workflow")

_ATTRIBUTE_READ_EXCEPTIONS = (pkcs11.exceptions.PKCS11Error, KeyError, TypeError)

# Token answers that mean "this value is not released". Device and session
# errors are not in here.
_UNREADABLE_VALUE_EXCEPTIONS = (
    pkcs11.exceptions.AttributeSensitive,
    pkcs11.exceptions.AttributeTypeInvalid,
    pkcs11.exceptions.AttributeValueInvalid,
    KeyError,
    TypeError,
)

DIGEST_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ObjectInfo:
    """Diagnostic view of a token object; unreadable attributes are None."""

    handle: int
    object_class: str | None
    label: str | None
    key_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "handle": self.handle,
            "object_class": self.object_class,
            "label": self.label,
            "key_type": self.key_type,
        }


@dataclass(frozen=True)
class WorkflowResult:
    """Everything the signing run observed, for reporting."""

    objects: tuple[ObjectInfo, ...]
    key_label: str
    curve_name: str
    public_key_der: bytes
    digest: bytes
    signature: bytes
    verified: bool
    token_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": "1",
            "token_label": self.token_label,
            "key_label": self.key_label,
            "curve": self.curve_name,
            "objects": [item.to_dict() for item in self.objects],
            "public_key_hex": self.public_key_der.hex(),
            "public_key_b64": base64.b64encode(self.public_key_der).decode("ascii"),
            "digest_algorithm": "sha256",
            "digest_hex": self.digest.hex(),
            "signature_hex": self.signature.hex(),
            "signature_b64": base64.b64encode(self.signature).decode("ascii"),
            "verified": self.verified,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


def _read_attribute(obj: Any, attribute: Attribute) -> Any:
    try:
        return obj[attribute]
    except _ATTRIBUTE_READ_EXCEPTIONS:
        return None


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    return getattr(value, "name", str(value))


@contextmanager
def object_search(session: Any, template: dict[Attribute, Any]) -> Iterator[Any]:
    """
    Hold a C_FindObjectsInit search open for the duration of the block.

    C_FindObjectsFinal runs on every exit path. python-pkcs11 only finalizes
    on exhaustion or garbage collection, which leaves the session locked in
    search state when a fetch fails part way.
    """
    try:
        search = session.get_objects(template)
    except Exception as exc:
        _logger.exception("C_FindObjectsInit failed template=%s", template)
        raise DiscoveryError(
            f"Failed to start object search: {format_exception(exc)}"
        ) from exc
    try:
        yield search
    finally:
        try:
            search._finalize()
        except Exception as exc:
            _logger.exception("C_FindObjectsFinal failed.")
            raise DiscoveryError(
                f"Failed to finish object search: {format_exception(exc)}"
            ) from exc


def discover(
    session: Any,
    object_class: ObjectClass | None = None,
    label: str | None = None,
) -> list[Any]:
    """
    Return the objects matching class and label, in token order.

    Passing neither filter matches every object visible to the session.
    """
    template: dict[Attribute, Any] = {}
    if object_class is not None:
        template[Attribute.CLASS] = object_class
    if label is not None:
        template[Attribute.LABEL] = label

    with object_search(session, template) as search:
        try:
            found = list(search)
        except Exception as exc:
            _logger.exception(
                "C_FindObjects failed object_class=%s label=%s",
                _enum_name(object_class),
                label,
            )
            raise DiscoveryError(
                f"Object search failed: {format_exception(exc)}"
            ) from exc

    _logger.info(
        "Found %d object(s) object_class=%s label=%s",
        len(found),
        _enum_name(object_class),
        label,
    )
    return found


def describe_object(obj: Any) -> ObjectInfo:
    return ObjectInfo(
        handle=int(obj.handle),
        object_class=_enum_name(_read_attribute(obj, Attribute.CLASS)),
        label=_read_attribute(obj, Attribute.LABEL),
        key_type=_enum_name(_read_attribute(obj, Attribute.KEY_TYPE)),
    )


def find_key(session: Any, object_class: ObjectClass, label: str) -> Any:
    found = discover(session, object_class=object_class, label=label)
    if not found:
        raise KeyNotFoundError(
            f"No {_enum_name(object_class)} object with label '{label}' was found."
        )
    if len(found) > 1:
        _logger.warning(
            "%d %s objects share label=%s; using handle=%s",
            len(found),
            _enum_name(object_class),
            label,
            found[0].handle,
        )
    return found[0]


def assert_private_key_protected(private_key: Any) -> None:
    """
    Confirm the token refuses to release the private key value.

    A sensitive or absent value, or an empty one, passes. A released value
    raises IntegrityViolation; other token errors raise HsmOperationError.
    """
    try:
        value = private_key[Attribute.VALUE]
    except _UNREADABLE_VALUE_EXCEPTIONS as exc:
        _logger.info(
            "Private key value is not readable handle=%s (%s).",
            private_key.handle,
            format_exception(exc),
        )
        return
    except pkcs11.exceptions.PKCS11Error as exc:
        _logger.exception(
            "Could not check private key value handle=%s", private_key.handle
        )
        raise HsmOperationError(
            f"Could not check private key handle {private_key.handle}: "
            f"{format_exception(exc)}"
        ) from exc

    if value:
        _logger.critical(
            "Private key value was readable outside the token handle=%s",
            private_key.handle,
        )
        raise IntegrityViolation(
            f"Private key handle {private_key.handle} released its CKA_VALUE "
            f"({len(value)} bytes). This should never happen."
        )
    _logger.info("Private key value read back empty handle=%s.", private_key.handle)


def fetch_public_key(public_key: Any) -> bytes:
    """
    Return the public key bytes as the token provides them.

    CKA_VALUE is preferred. Tokens that leave it unset get a
    SubjectPublicKeyInfo rebuilt from CKA_EC_PARAMS and CKA_EC_POINT.
    """
    value = _read_attribute(public_key, Attribute.VALUE)
    if value:
        _logger.info(
            "Read public key CKA_VALUE handle=%s size=%d", public_key.handle, len(value)
        )
        return bytes(value)

    try:
        ec_params = public_key[Attribute.EC_PARAMS]
        ec_point = public_key[Attribute.EC_POINT]
    except _ATTRIBUTE_READ_EXCEPTIONS as exc:
        _logger.exception("Public key exposes no usable value handle=%s", public_key.handle)
        raise HsmOperationError(
            f"Public key handle {public_key.handle} exposes neither CKA_VALUE nor "
            f"CKA_EC_PARAMS/CKA_EC_POINT: {format_exception(exc)}"
        ) from exc
    _logger.info(
        "Rebuilt public key from CKA_EC_PARAMS/CKA_EC_POINT handle=%s", public_key.handle
    )
    return public_key_info_from_params(bytes(ec_params), bytes(ec_point))


def _check_digest_size(digest: bytes, hash_algorithm: hashes.HashAlgorithm) -> None:
    if len(digest) != hash_algorithm.digest_size:
        raise ValueError(
            f"Digest length mismatch for {hash_algorithm.name}: "
            f"expected {hash_algorithm.digest_size} bytes, got {len(digest)}."
        )


def sign_digest(
    private_key: Any,
    digest: bytes,
    *,
    curve: ec.EllipticCurve | None = None,
    hash_algorithm: hashes.HashAlgorithm | None = None,
) -> bytes:
    """
    Sign a digest that was hashed locally, using plain CKM_ECDSA.

    The digest must be exactly as long as ``hash_algorithm`` output (SHA-256
    by default); anything else is a ValueError.
    Returns r||s, each half as wide as the curve order (64 bytes on P-256).
    """
    _check_digest_size(digest, hash_algorithm or hashes.SHA256())
    if curve is None:
        ec_params = _read_attribute(private_key, Attribute.EC_PARAMS)
        if ec_params is None:
            raise SigningError(
                f"Private key handle {private_key.handle} does not expose CKA_EC_PARAMS; "
                "pass the curve explicitly."
            )
        try:
            curve = curve_from_ec_params(bytes(ec_params))
        except PublicKeyDecodeError as exc:
            raise SigningError(str(exc)) from exc

    try:
        signature = private_key.sign(digest, mechanism=Mechanism.ECDSA)
    except Exception as exc:
        _logger.exception("C_Sign failed handle=%s", private_key.handle)
        raise SigningError(f"Token refused to sign: {format_exception(exc)}") from exc

    try:
        raw = normalize_raw_signature(bytes(signature), coordinate_size(curve))
    except ValueError as exc:
        _logger.error("Unusable signature from token handle=%s: %s", private_key.handle, exc)
        raise SigningError(str(exc)) from exc

    _logger.info(
        "Signed digest handle=%s curve=%s signature_size=%d",
        private_key.handle,
        curve.name,
        len(raw),
    )
    return raw


def verify(
    public_key: ec.EllipticCurvePublicKey | bytes,
    digest: bytes,
    signature: bytes,
    *,
    ec_params: bytes | None = None,
    hash_algorithm: hashes.HashAlgorithm | None = None,
) -> bool:
    """
    Check a raw r||s signature over ``digest`` locally.

    A wrong signature returns False. An undecodable public key raises
    PublicKeyDecodeError. A digest that is not ``hash_algorithm`` sized
    (SHA-256 by default) raises ValueError, as in sign_digest().
    """
    if isinstance(public_key, (bytes, bytearray)):
        public_key = decode_public_key(bytes(public_key), ec_params=ec_params)
    hash_algorithm = hash_algorithm or hashes.SHA256()
    _check_digest_size(digest, hash_algorithm)

    expected_size = 2 * coordinate_size(public_key.curve)
    if len(signature) != expected_size:
        _logger.warning(
            "Signature size %d does not match %s (%d bytes).",
            len(signature),
            public_key.curve.name,
            expected_size,
        )
        return False

    try:
        public_key.verify(
            raw_to_der_signature(signature),
            digest,
            ec.ECDSA(utils.Prehashed(hash_algorithm)),
        )
    except InvalidSignature:
        _logger.warning("Signature did not verify curve=%s", public_key.curve.name)
        return False
    _logger.info("Signature verified curve=%s", public_key.curve.name)
    return True


def digest_file(path: str | Path, chunk_size: int = DIGEST_CHUNK_SIZE) -> bytes:
    resolved = Path(path)
    if not resolved.exists():
        raise HsmConfigurationError(f"Input file does not exist: {resolved}")
    if not resolved.is_file():
        raise HsmConfigurationError(f"Input path is not a file: {resolved}")

    hasher = hashlib.sha256()
    with resolved.open("rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            hasher.update(chunk)
    digest = hasher.digest()
    _logger.info("Hashed input file path=%s sha256=%s", resolved, digest.hex())
    return digest


def run_workflow(
    config: SigningDemoConfig,
    *,
    token_factory: Callable[[SigningDemoConfig], Any] = Pkcs11Token,
) -> WorkflowResult:
    """
    Run discovery, protection check, sign and verify against one session.

    Any failure aborts the run; the session is logged out and closed first.
    """
    with token_factory(config) as token:
        session = token.session
        objects = tuple(describe_object(obj) for obj in discover(session))

        private_key = find_key(session, ObjectClass.PRIVATE_KEY, config.key_label)
        assert_private_key_protected(private_key)

        public_object = find_key(session, ObjectClass.PUBLIC_KEY, config.key_label)
        public_key = decode_public_key(
            fetch_public_key(public_object),
            ec_params=_read_attribute(public_object, Attribute.EC_PARAMS),
        )

        digest = digest_file(config.input_file)
        signature = sign_digest(private_key, digest, curve=public_key.curve)
        token_label = getattr(token, "token_label", None)

    verified = verify(public_key, digest, signature)
    _logger.info(
        "Workflow finished key_label=%s curve=%s verified=%s",
        config.key_label,
        public_key.curve.name,
        verified,
    )
    return WorkflowResult(
        objects=objects,
        key_label=config.key_label,
        curve_name=public_key.curve.name,
        public_key_der=public_key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ),
        digest=digest,
        signature=signature,
        verified=verified,
        token_label=token_label,
    )

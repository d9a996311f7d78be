"""
Elliptic-curve key and signature encodings.

Tokens disagree on how they hand out EC public keys: some return a DER
SubjectPublicKeyInfo in CKA_VALUE, others only expose CKA_EC_PARAMS and a
CKA_EC_POINT that may or may not be wrapped in a DER OCTET STRING. The curve is
always taken from the key itself, never assumed.
"""

from __future__ import annotations

import logging

from asn1crypto import algos, core, keys
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils

from .exceptions import PublicKeyDecodeError

_logger = logging.getLogger("hsm_signing.ec_keys")

# Names seen in CKA_EC_PARAMS PrintableString form and in vendor tooling.
_CURVES_BY_NAME: dict[str, type[ec.EllipticCurve]] = {
    "secp192r1": ec.SECP192R1,
    "prime192v1": ec.SECP192R1,
    "p192": ec.SECP192R1,
    "secp224r1": ec.SECP224R1,
    "p224": ec.SECP224R1,
    "secp256r1": ec.SECP256R1,
    "prime256v1": ec.SECP256R1,
    "p256": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "p384": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
    "p521": ec.SECP521R1,
    "secp256k1": ec.SECP256K1,
    "k256": ec.SECP256K1,
    "brainpoolp256r1": ec.BrainpoolP256R1,
    "brainpoolp384r1": ec.BrainpoolP384R1,
    "brainpoolp512r1": ec.BrainpoolP512R1,
}


def _normalize_curve_name(name: str) -> str:
    normalized = name.strip().lower().replace("-", "").replace("_", "")
    if normalized.startswith("nist"):
        normalized = normalized[len("nist"):]
    return normalized


def curve_from_name(name: str) -> ec.EllipticCurve:
    curve_cls = _CURVES_BY_NAME.get(_normalize_curve_name(name))
    if curve_cls is None:
        available = ", ".join(sorted(_CURVES_BY_NAME))
        raise PublicKeyDecodeError(f"Unsupported EC curve '{name}'. Available: {available}")
    return curve_cls()


def curve_from_oid(dotted: str) -> ec.EllipticCurve:
    try:
        return ec.get_curve_for_oid(x509.ObjectIdentifier(dotted))()
    except (LookupError, ValueError) as exc:
        raise PublicKeyDecodeError(f"Unsupported EC curve OID {dotted}.") from exc


def curve_from_ec_params(ec_params: bytes) -> ec.EllipticCurve:
    """Resolve CKA_EC_PARAMS (named-curve OID or PrintableString name) to a curve."""
    try:
        parameters = keys.ECDomainParameters.load(ec_params, strict=True)
    except ValueError:
        parameters = None

    if parameters is not None:
        if parameters.name != "named":
            raise PublicKeyDecodeError(
                f"Only named EC curves are supported, got '{parameters.name}' parameters."
            )
        dotted = parameters.chosen.dotted
        _logger.debug("EC parameters name a curve by OID %s", dotted)
        return curve_from_oid(dotted)

    try:
        name = core.PrintableString.load(ec_params, strict=True).native
    except ValueError as exc:
        raise PublicKeyDecodeError("CKA_EC_PARAMS is not valid DER.") from exc
    _logger.debug("EC parameters name a curve by string %s", name)
    return curve_from_name(name)


def coordinate_size(curve: ec.EllipticCurve) -> int:
    return (curve.key_size + 7) // 8


def unwrap_ec_point(ec_point: bytes) -> bytes:
    """Strip the DER OCTET STRING some tokens wrap around CKA_EC_POINT."""
    try:
        return core.OctetString.load(ec_point, strict=True).native
    except ValueError:
        return ec_point


def public_key_info_from_params(ec_params: bytes, ec_point: bytes) -> bytes:
    """
    Build a DER SubjectPublicKeyInfo from CKA_EC_PARAMS and CKA_EC_POINT.

    The point is checked against the curve first. A bare uncompressed point
    can also parse as an OCTET STRING, so unwrapping alone is not enough.
    """
    public_key = _load_point(curve_from_ec_params(ec_params), ec_point)
    try:
        parameters = keys.ECDomainParameters.load(ec_params, strict=True)
    except ValueError:
        # PrintableString curve names have no place in an SPKI; go through the curve.
        return public_key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    point = public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )
    return keys.PublicKeyInfo(
        {
            "algorithm": {"algorithm": "ec", "parameters": parameters},
            "public_key": point,
        }
    ).dump()


def _load_point(curve: ec.EllipticCurve, ec_point: bytes) -> ec.EllipticCurvePublicKey:
    candidates = [ec_point]
    unwrapped = unwrap_ec_point(ec_point)
    if unwrapped != ec_point:
        candidates.insert(0, unwrapped)
    for candidate in candidates:
        try:
            return ec.EllipticCurvePublicKey.from_encoded_point(curve, candidate)
        except ValueError:
            continue
    raise PublicKeyDecodeError(
        f"EC point ({len(ec_point)} bytes) is not a valid {curve.name} point."
    )


def decode_public_key(
    raw: bytes,
    ec_params: bytes | None = None,
) -> ec.EllipticCurvePublicKey:
    """
    Decode public key bytes emitted by a token into a cryptography key.

    Accepted forms, tried in order: PEM or DER SubjectPublicKeyInfo, then a
    DER OCTET STRING wrapping an X9.62 point, then a bare X9.62 point. The
    last two need ``ec_params`` to know the curve.
    """
    if not raw:
        raise PublicKeyDecodeError("Public key value is empty.")

    loaded = None
    try:
        if raw.lstrip().startswith(b"-----BEGIN"):
            loaded = serialization.load_pem_public_key(raw)
        else:
            loaded = serialization.load_der_public_key(raw)
    except (ValueError, UnsupportedAlgorithm):
        _logger.debug("Public key is not a SubjectPublicKeyInfo; trying X9.62 point.")

    if loaded is not None:
        if not isinstance(loaded, ec.EllipticCurvePublicKey):
            raise PublicKeyDecodeError(
                f"Expected an EC public key, got {type(loaded).__name__}."
            )
        return loaded

    if ec_params is None:
        raise PublicKeyDecodeError(
            "Public key is not a SubjectPublicKeyInfo and no EC parameters were given."
        )
    return _load_point(curve_from_ec_params(ec_params), raw)


def raw_to_der_signature(signature: bytes) -> bytes:
    """Convert fixed-width r||s into a DER ECDSA-Sig-Value."""
    if not signature or len(signature) % 2 != 0:
        raise ValueError(f"Invalid raw ECDSA signature length: {len(signature)}.")
    half = len(signature) // 2
    r = int.from_bytes(signature[:half], byteorder="big")
    s = int.from_bytes(signature[half:], byteorder="big")
    return utils.encode_dss_signature(r, s)


def normalize_raw_signature(signature: bytes, size: int) -> bytes:
    """
    Return the signature as r||s with each half ``size`` bytes, big-endian.

    PKCS#11 ECDSA implementations may return either raw r||s or a DER sequence.
    """
    if len(signature) == 2 * size:
        return signature

    try:
        parsed = algos.DSASignature.load(signature, strict=True)
        r = parsed["r"].native
        s = parsed["s"].native
    except ValueError as exc:
        raise ValueError(
            f"ECDSA signature is {len(signature)} bytes; expected {2 * size} raw bytes or DER."
        ) from exc

    try:
        return r.to_bytes(size, byteorder="big") + s.to_bytes(size, byteorder="big")
    except OverflowError as exc:
        raise ValueError(f"ECDSA signature component does not fit in {size} bytes.") from exc

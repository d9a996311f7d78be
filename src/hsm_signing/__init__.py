"""Sign and verify with a non-extractable EC key held on a PKCS#11 token."""

from .config import SigningDemoConfig
from .ec_keys import (
    curve_from_ec_params,
    curve_from_name,
    decode_public_key,
    normalize_raw_signature,
    raw_to_der_signature,
)
from .exceptions import (
    DiscoveryError,
    HsmAuthenticationError,
    HsmConfigurationError,
    HsmConnectionError,
    HsmOperationError,
    HsmSigningError,
    IntegrityViolation,
    KeyNotFoundError,
    PublicKeyDecodeError,
    SigningError,
)
from .logging_utils import configure_logging
from .token import Pkcs11Token
from .workflow import (
    ObjectInfo,
    WorkflowResult,
    assert_private_key_protected,
    describe_object,
    digest_file,
    discover,
    fetch_public_key,
    find_key,
    object_search,
    run_workflow,
    sign_digest,
    verify,
)

__all__ = [
    "DiscoveryError",
    "HsmAuthenticationError",
    "HsmConfigurationError",
    "HsmConnectionError",
    "HsmOperationError",
    "HsmSigningError",
    "IntegrityViolation",
    "KeyNotFoundError",
    "ObjectInfo",
    "Pkcs11Token",
    "PublicKeyDecodeError",
    "SigningDemoConfig",
    "SigningError",
    "WorkflowResult",
    "assert_private_key_protected",
    "configure_logging",
    "curve_from_ec_params",
    "curve_from_name",
    "decode_public_key",
    "describe_object",
    "digest_file",
    "discover",
    "fetch_public_key",
    "find_key",
    "normalize_raw_signature",
    "object_search",
    "raw_to_der_signature",
    "run_workflow",
    "sign_digest",
    "verify",
]

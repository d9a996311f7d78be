class HsmSigningError(RuntimeError):
    """Base error."""


class HsmConfigurationError(HsmSigningError):
    """Configuration is invalid or incomplete."""


class HsmOperationError(HsmSigningError):
    """An HSM operation failed."""


class HsmConnectionError(HsmOperationError):
    """The PKCS#11 library or the token could not be reached."""


class HsmAuthenticationError(HsmOperationError):
    """Login to the token was rejected."""


class DiscoveryError(HsmOperationError):
    """An object search could not be completed."""


class KeyNotFoundError(HsmOperationError):
    """No object matched the requested class and label."""


class SigningError(HsmOperationError):
    """The token refused to sign or returned an unusable signature."""


class PublicKeyDecodeError(HsmOperationError):
    """Public key bytes could not be decoded into a curve and a point."""


class IntegrityViolation(HsmSigningError):
    """
    Private key material was readable outside the token.

    This is never recoverable and must abort the run.
    """

from __future__ import annotations

import logging
from typing import Any

import pkcs11

from .config import SigningDemoConfig
from .exceptions import (
    HsmAuthenticationError,
    HsmConnectionError,
    HsmOperationError,
)

_logger = logging.getLogger("hsm_signing.token")

_AUTHENTICATION_EXCEPTIONS = (
    pkcs11.exceptions.PinIncorrect,
    pkcs11.exceptions.PinInvalid,
    pkcs11.exceptions.PinLenRange,
    pkcs11.exceptions.PinExpired,
    pkcs11.exceptions.PinLocked,
    pkcs11.exceptions.UserPinNotInitialized,
)


def format_exception(exc: BaseException) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__


class Pkcs11Token:
    """
    Authenticated PKCS#11 session scoped to a ``with`` block.

    Entering loads the module, selects a token and logs in as the user.
    Leaving logs out and closes the session, including when the block raised.
    """

    def __init__(self, config: SigningDemoConfig) -> None:
        self._config = config
        self._lib: Any = None
        self._session: pkcs11.Session | None = None
        self.token_label: str | None = None
        self.slot_description: str | None = None

    def __enter__(self) -> "Pkcs11Token":
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is None:
            self.close()
            return
        try:
            self.close()
        except HsmConnectionError:
            # Already logged by close(); the error from the block wins.
            _logger.warning(
                "Session close failed while %s was propagating.", exc_type.__name__
            )

    @property
    def session(self) -> pkcs11.Session:
        if self._session is None:
            raise HsmOperationError("Session is not open.")
        return self._session

    def open(self) -> None:
        if self._session is not None:
            _logger.debug("HSM session already open.")
            return

        token = self._select_token()
        try:
            self._session = token.open(user_pin=self._config.user_pin(), rw=True)
        except _AUTHENTICATION_EXCEPTIONS as exc:
            _logger.error(
                "Login rejected for auth_key_id=%s: %s",
                self._config.auth_key_id,
                format_exception(exc),
            )
            raise HsmAuthenticationError(
                f"Login rejected: {format_exception(exc)}"
            ) from exc
        except Exception as exc:
            _logger.exception("Failed to open HSM session.")
            raise HsmConnectionError(
                f"Failed to open HSM session: {format_exception(exc)}"
            ) from exc
        _logger.info(
            "HSM session opened (token_label=%s, slot=%s).",
            self.token_label,
            self.slot_description,
        )

    def close(self) -> None:
        if self._session is None:
            _logger.debug("HSM session already closed.")
            return
        session, self._session = self._session, None
        # python-pkcs11 logs the user out before C_CloseSession.
        try:
            session.close()
        except Exception as exc:
            _logger.exception("Failed to close HSM session.")
            raise HsmConnectionError(
                f"Failed to close HSM session: {format_exception(exc)}"
            ) from exc
        _logger.info("HSM session closed.")

    def _load_library(self) -> Any:
        if self._lib is None:
            try:
                self._lib = pkcs11.lib(self._config.module_path)
            except Exception as exc:
                _logger.exception(
                    "Failed to load PKCS#11 module path=%s", self._config.module_path
                )
                raise HsmConnectionError(
                    f"Failed to load PKCS#11 module '{self._config.module_path}': "
                    f"{format_exception(exc)}"
                ) from exc
            _logger.info("Loaded PKCS#11 module path=%s", self._config.module_path)
        return self._lib

    def _select_token(self) -> Any:
        lib = self._load_library()
        try:
            if self._config.token_label:
                _logger.info(
                    "Selecting token by token_label=%s", self._config.token_label
                )
                token = lib.get_token(token_label=self._config.token_label)
                self.slot_description = None
            else:
                slots = list(lib.get_slots(token_present=True))
                _logger.info(
                    "Found %d slot(s) with a token present; using slot_index=%d",
                    len(slots),
                    self._config.slot_index,
                )
                if self._config.slot_index >= len(slots):
                    raise HsmConnectionError(
                        f"No token present at slot index {self._config.slot_index} "
                        f"({len(slots)} slot(s) with a token)."
                    )
                slot = slots[self._config.slot_index]
                self.slot_description = f"{slot.slot_id}: {slot.slot_description}".strip()
                token = slot.get_token()
        except HsmConnectionError:
            raise
        except Exception as exc:
            _logger.exception("Failed to select token.")
            raise HsmConnectionError(
                f"Failed to select token: {format_exception(exc)}"
            ) from exc
        self.token_label = token.label
        return token

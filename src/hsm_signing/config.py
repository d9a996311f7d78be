from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from .exceptions import HsmConfigurationError

DEFAULT_MODULE_PATH = "/usr/local/lib/pkcs11/yubihsm_pkcs11.so"
DEFAULT_AUTH_KEY_ID = "0001"
DEFAULT_AUTH_KEY_PASSWORD = "password"
DEFAULT_KEY_LABEL = "hsm-go-test-key1"
DEFAULT_INPUT_FILE = "message.txt"


@dataclass(frozen=True)
class SigningDemoConfig:
    """
    Runtime configuration for the signing workflow.

    The login PIN is ``auth_key_id + auth_key_password`` (YubiHSM convention).
    Leave ``auth_key_id`` empty for tokens that take a plain user PIN.
    """

    module_path: str = DEFAULT_MODULE_PATH
    auth_key_id: str = DEFAULT_AUTH_KEY_ID
    auth_key_password: str = field(default=DEFAULT_AUTH_KEY_PASSWORD, repr=False)
    key_label: str = DEFAULT_KEY_LABEL
    input_file: str = DEFAULT_INPUT_FILE
    token_label: str | None = None
    slot_index: int = 0

    @classmethod
    def from_env(cls, **overrides: object) -> "SigningDemoConfig":
        """
        Read HSM_* variables, apply non-None ``overrides`` on top, then validate.
        """
        slot_raw = os.environ.get("HSM_SLOT_INDEX")
        slot_index = 0
        if slot_raw:
            slot_index = _parse_slot_index(slot_raw)

        config = cls(
            module_path=os.environ.get("HSM_PKCS11_MODULE", DEFAULT_MODULE_PATH),
            auth_key_id=os.environ.get("HSM_AUTH_KEY_ID", DEFAULT_AUTH_KEY_ID),
            auth_key_password=os.environ.get(
                "HSM_AUTH_KEY_PASSWORD", DEFAULT_AUTH_KEY_PASSWORD
            ),
            key_label=os.environ.get("HSM_KEY_LABEL", DEFAULT_KEY_LABEL),
            input_file=os.environ.get("HSM_INPUT_FILE", DEFAULT_INPUT_FILE),
            token_label=os.environ.get("HSM_TOKEN_LABEL") or None,
            slot_index=slot_index,
        )
        return config.with_overrides(**overrides)

    def with_overrides(self, **overrides: object) -> "SigningDemoConfig":
        """Return a copy with every non-None override applied, then validate it."""
        applied = {name: value for name, value in overrides.items() if value is not None}
        updated = replace(self, **applied)
        updated.validate()
        return updated

    def validate(self) -> None:
        if not self.module_path:
            raise HsmConfigurationError("HSM_PKCS11_MODULE must not be empty.")
        if not Path(self.module_path).exists():
            raise HsmConfigurationError(
                f"PKCS#11 module path does not exist: {self.module_path}"
            )
        if not self.key_label.strip():
            raise HsmConfigurationError("HSM_KEY_LABEL must not be empty.")
        if self.slot_index < 0:
            raise HsmConfigurationError(
                f"HSM_SLOT_INDEX must be >= 0, got: {self.slot_index}"
            )

    def user_pin(self) -> str:
        pin = f"{self.auth_key_id}{self.auth_key_password}"
        if not pin:
            raise HsmConfigurationError("HSM_AUTH_KEY_PASSWORD is required.")
        return pin


def _parse_slot_index(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise HsmConfigurationError(
            f"HSM_SLOT_INDEX must be an integer, got: {value}"
        ) from exc
    if parsed < 0:
        raise HsmConfigurationError(f"HSM_SLOT_INDEX must be >= 0, got: {value}")
    return parsed

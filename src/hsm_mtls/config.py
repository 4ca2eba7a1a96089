from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .exceptions import HsmConfigurationError

SUPPORTED_TLS_VERSIONS = ("1.2", "1.3")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: str, name: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise HsmConfigurationError(f"{name} must be a boolean, got: {value}")


def _parse_tls_version(value: str) -> str:
    normalized = value.strip().lower().removeprefix("tlsv").removeprefix("tls")
    if normalized not in SUPPORTED_TLS_VERSIONS:
        raise HsmConfigurationError(
            f"HSM_TLS_MIN_VERSION must be one of {', '.join(SUPPORTED_TLS_VERSIONS)}, "
            f"got: {value}"
        )
    return normalized


@dataclass(frozen=True)
class HsmConfig:
    """
    Runtime configuration for an HSM-backed TLS client credential.

    The PIN itself is never stored here; only the name of the environment
    variable that holds it. It is read at login time through user_pin().
    """

    module_path: str
    key_label: str
    token_label: str | None = None
    slot_no: int | None = None
    user_pin_env: str = "HSM_USER_PIN"
    certificate_path: str | None = None
    min_tls_version: str = "1.2"
    verify_peer: bool = True
    allow_insecure: bool = False
    ca_file: str | None = None

    @classmethod
    def from_env(cls) -> "HsmConfig":
        module_path = os.environ.get("HSM_PKCS11_MODULE")
        key_label = os.environ.get("HSM_KEY_LABEL")
        token_label = os.environ.get("HSM_TOKEN_LABEL") or None
        slot_raw = os.environ.get("HSM_SLOT")
        user_pin_env = os.environ.get("HSM_USER_PIN_ENV", "HSM_USER_PIN")
        certificate_path = os.environ.get("HSM_CLIENT_CERT") or None
        ca_file = os.environ.get("HSM_TLS_CA_FILE") or None

        if not module_path:
            raise HsmConfigurationError("HSM_PKCS11_MODULE is required.")
        if not Path(module_path).exists():
            raise HsmConfigurationError(
                f"PKCS#11 module path does not exist: {module_path}"
            )
        if not key_label:
            raise HsmConfigurationError("HSM_KEY_LABEL is required.")

        slot_no: int | None = None
        if slot_raw:
            try:
                slot_no = int(slot_raw)
            except ValueError as exc:
                raise HsmConfigurationError(
                    f"HSM_SLOT must be an integer, got: {slot_raw}"
                ) from exc

        if token_label and slot_no is not None:
            raise HsmConfigurationError(
                "Set at most one of HSM_TOKEN_LABEL or HSM_SLOT."
            )

        min_tls_version = _parse_tls_version(
            os.environ.get("HSM_TLS_MIN_VERSION", "1.2")
        )
        verify_peer = _parse_bool(
            os.environ.get("HSM_TLS_VERIFY_PEER", "true"), "HSM_TLS_VERIFY_PEER"
        )
        allow_insecure = _parse_bool(
            os.environ.get("HSM_TLS_ALLOW_INSECURE", "false"),
            "HSM_TLS_ALLOW_INSECURE",
        )
        if not verify_peer and not allow_insecure:
            raise HsmConfigurationError(
                "HSM_TLS_VERIFY_PEER=false requires HSM_TLS_ALLOW_INSECURE=true."
            )

        return cls(
            module_path=module_path,
            key_label=key_label,
            token_label=token_label,
            slot_no=slot_no,
            user_pin_env=user_pin_env,
            certificate_path=certificate_path,
            min_tls_version=min_tls_version,
            verify_peer=verify_peer,
            allow_insecure=allow_insecure,
            ca_file=ca_file,
        )

    def user_pin(self) -> str:
        pin = os.environ.get(self.user_pin_env)
        if not pin:
            raise HsmConfigurationError(f"{self.user_pin_env} is required.")
        return pin

from __future__ import annotations

import dataclasses
import logging
import ssl
from dataclasses import dataclass

from .config import HsmConfig
from .credential import Credential
from .exceptions import HsmConfigurationError

_logger = logging.getLogger("hsm_mtls.tls")

TLS_VERSIONS: dict[str, ssl.TLSVersion] = {
    "1.2": ssl.TLSVersion.TLSv1_2,
    "1.3": ssl.TLSVersion.TLSv1_3,
}


@dataclass(frozen=True)
class TlsClientConfig:
    """
    Client-side TLS settings handed to the TLS layer.

    Peer verification is on by default. Turning it off needs both
    verify_peer=False and allow_insecure=True.
    """

    credentials: tuple[Credential, ...] = ()
    min_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    verify_peer: bool = True
    check_hostname: bool = True
    allow_insecure: bool = False
    ca_file: str | None = None
    ca_path: str | None = None

    def __post_init__(self) -> None:
        if self.min_version not in TLS_VERSIONS.values():
            raise HsmConfigurationError(
                f"Minimum TLS version must be TLS 1.2 or 1.3, got: {self.min_version!r}"
            )
        if not self.verify_peer and not self.allow_insecure:
            raise HsmConfigurationError(
                "Disabling peer verification requires allow_insecure=True."
            )

    @classmethod
    def from_hsm_config(cls, config: HsmConfig) -> "TlsClientConfig":
        return cls(
            min_version=TLS_VERSIONS[config.min_tls_version],
            verify_peer=config.verify_peer,
            allow_insecure=config.allow_insecure,
            ca_file=config.ca_file,
        )

    @property
    def client_credential(self) -> Credential | None:
        return self.credentials[0] if self.credentials else None


def attach_credential(
    credential: Credential,
    config: TlsClientConfig | None = None,
) -> TlsClientConfig:
    """Return a copy of config presenting credential as the client certificate."""
    config = config or TlsClientConfig()
    if not config.verify_peer:
        _logger.warning(
            "INSECURE: peer certificate verification is disabled for this TLS config."
        )
    others = tuple(existing for existing in config.credentials if existing is not credential)
    updated = dataclasses.replace(config, credentials=(credential,) + others)
    _logger.info(
        "Attached client credential subject=%s min_version=%s verify_peer=%s",
        credential.leaf.subject.human_friendly,
        config.min_version.name,
        config.verify_peer,
    )
    return updated


def build_ssl_context(config: TlsClientConfig) -> ssl.SSLContext:
    """
    Apply the server-verification policy to a standard library client context.

    The client key stays in the HSM, so the context carries no client
    certificate. Use handshake.open_tls_connection() for client-authenticated
    connections; it signs with config.client_credential.
    """
    context = ssl.create_default_context(
        ssl.Purpose.SERVER_AUTH,
        cafile=config.ca_file,
        capath=config.ca_path,
    )
    context.minimum_version = config.min_version
    if config.verify_peer:
        context.verify_mode = ssl.CERT_REQUIRED
        context.check_hostname = config.check_hostname
    else:
        _logger.warning("INSECURE: building SSL context without peer verification.")
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context

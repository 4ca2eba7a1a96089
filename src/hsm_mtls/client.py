from __future__ import annotations

import logging
from typing import Any, Iterable

from asn1crypto import x509

from .algorithms import AlgorithmHint
from .config import HsmConfig
from .credential import Credential, assemble_credential
from .exceptions import CertificateParseError, HsmOperationError
from .handshake import HsmHTTPSConnection, open_tls_connection
from .session import HsmSession
from .signer import Pkcs11Signer
from .tls import TlsClientConfig, attach_credential
from .x509_ops import CertificateInput, load_certificate_chain, load_certificate_chain_file

_logger = logging.getLogger("hsm_mtls.client")


class HsmTlsClient:
    """
    Builds a TLS client configuration whose private key lives in the HSM.

    open() runs session -> key lookup -> signer -> credential -> TLS config,
    and either finishes with a validated credential or tears everything
    down and re-raises. close() is safe to call any number of times.
    """

    def __init__(
        self,
        config: HsmConfig,
        certificate_chain: CertificateInput | Iterable[CertificateInput] | None = None,
        *,
        self_test: bool = True,
        self_test_algorithm: AlgorithmHint | None = None,
        strict_key_lookup: bool = False,
    ) -> None:
        self._config = config
        self._certificate_chain = certificate_chain
        self._self_test = self_test
        self._self_test_algorithm = self_test_algorithm
        self._strict_key_lookup = strict_key_lookup
        self._session: HsmSession | None = None
        self._signer: Pkcs11Signer | None = None
        self._credential: Credential | None = None
        self._tls_config: TlsClientConfig | None = None

    def __enter__(self) -> "HsmTlsClient":
        self.open()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    @property
    def session(self) -> HsmSession:
        if self._session is None:
            raise HsmOperationError("HSM TLS client is not open.")
        return self._session

    @property
    def signer(self) -> Pkcs11Signer:
        if self._signer is None:
            raise HsmOperationError("HSM TLS client is not open.")
        return self._signer

    @property
    def credential(self) -> Credential:
        if self._credential is None:
            raise HsmOperationError("HSM TLS client is not open.")
        return self._credential

    @property
    def tls_config(self) -> TlsClientConfig:
        if self._tls_config is None:
            raise HsmOperationError("HSM TLS client is not open.")
        return self._tls_config

    def connect(self, host: str, port: int = 443, *, timeout: Any = None) -> Any:
        """Open a client-authenticated TLS connection signed by the HSM key."""
        return open_tls_connection(self.tls_config, host, port, timeout=timeout)

    def https_connection(
        self, host: str, port: int | None = None, *, timeout: Any = None
    ) -> HsmHTTPSConnection:
        return HsmHTTPSConnection(host, port, tls_config=self.tls_config, timeout=timeout)

    def _resolve_certificate_chain(self) -> tuple[x509.Certificate, ...]:
        if self._certificate_chain is not None:
            return load_certificate_chain(self._certificate_chain)
        if self._config.certificate_path is None:
            raise CertificateParseError(
                "No client certificate given; set HSM_CLIENT_CERT or pass certificate_chain."
            )
        return load_certificate_chain_file(self._config.certificate_path)

    def open(self) -> None:
        if self._tls_config is not None:
            _logger.debug("HSM TLS client already open.")
            return

        # Parse the certificate first so a bad file never costs a login.
        chain = self._resolve_certificate_chain()
        session = HsmSession(self._config)
        self._session = session
        try:
            session.open()
            signer = Pkcs11Signer.from_label(
                session,
                self._config.key_label,
                strict=self._strict_key_lookup,
            )
            credential = assemble_credential(
                chain,
                signer,
                self_test=self._self_test,
                self_test_algorithm=self._self_test_algorithm,
            )
            tls_config = attach_credential(
                credential, TlsClientConfig.from_hsm_config(self._config)
            )
        except BaseException:
            self.close()
            raise

        self._signer = signer
        self._credential = credential
        self._tls_config = tls_config
        _logger.info(
            "HSM TLS client ready key_label=%s token_label=%s",
            self._config.key_label,
            session.token_label,
        )

    def close(self) -> None:
        self._tls_config = None
        self._credential = None
        self._signer = None
        session, self._session = self._session, None
        if session is not None:
            session.close()

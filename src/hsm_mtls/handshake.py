"""
TLS client connections that authenticate with an HSM-resident key.

The standard library ssl module only takes private keys it can read, so the
handshake runs on tlslite-ng. Its key objects are plain Python, which lets
CertificateVerify signatures go through a SigningCapability.
"""

from __future__ import annotations

import http.client
import ipaddress
import logging
import socket
import ssl
from pathlib import Path
from typing import Any

from asn1crypto import algos
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.verification import PolicyBuilder, Store, VerificationError
from tlslite.api import X509, HandshakeSettings, TLSConnection, X509CertChain
from tlslite.errors import TLSError
from tlslite.utils.python_rsakey import Python_RSAKey

from .credential import Credential
from .exceptions import HsmConfigurationError, SignError, TlsHandshakeError, format_exception
from .signer import SigningCapability
from .tls import TlsClientConfig

_logger = logging.getLogger("hsm_mtls.handshake")

TLSLITE_VERSIONS: dict[ssl.TLSVersion, tuple[int, int]] = {
    ssl.TLSVersion.TLSv1_2: (3, 3),
    ssl.TLSVersion.TLSv1_3: (3, 4),
}
# Hashes the HSM signer supports; tlslite-ng would otherwise offer sha1/sha224.
SIGNATURE_HASHES = ("sha512", "sha384", "sha256")


def _split_digest_info(data: bytes) -> tuple[str, bytes]:
    try:
        info = algos.DigestInfo.load(data, strict=True)
        return info["digest_algorithm"]["algorithm"].native, info["digest"].native
    except ValueError as exc:
        raise SignError("PKCS#1 v1.5 signing input is not a DER DigestInfo.") from exc


class HsmRSAKey(Python_RSAKey):
    """
    tlslite-ng RSA key whose private operations run on a SigningCapability.

    tlslite-ng calls sign() with a bare digest for RSA-PSS, and with a DER
    DigestInfo for PKCS#1 v1.5 in TLS 1.2. Verification uses the public
    modulus and exponent read from the signer.
    """

    def __init__(self, signer: SigningCapability) -> None:
        public_key = signer.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise HsmConfigurationError(
                "HSM-backed TLS connections support RSA client keys only."
            )
        numbers = public_key.public_numbers()
        super().__init__(numbers.n, numbers.e)
        self._signer = signer

    def hasPrivateKey(self) -> bool:
        return True

    def _rawPrivateKeyOp(self, message: int) -> int:
        raise SignError("Raw RSA private key operations are not available for HSM keys.")

    def sign(
        self,
        data: bytes | bytearray,
        padding: str = "pkcs1",
        hashAlg: str | None = None,
        saltLen: int | None = None,
    ) -> bytearray:
        digest = bytes(data)
        padding = (padding or "pkcs1").lower()
        if padding == "pss":
            if saltLen is not None and saltLen != len(digest):
                raise SignError(
                    f"RSA-PSS salt length {saltLen} does not match the digest length."
                )
            algorithm = f"rsa_pss_{hashAlg}"
        elif padding == "pkcs1":
            if hashAlg is None:
                hashAlg, digest = _split_digest_info(digest)
            algorithm = f"rsa_pkcs1v15_{hashAlg}"
        else:
            raise SignError(f"Unsupported RSA padding for HSM signing: {padding}")

        try:
            signature = self._signer.sign(digest, algorithm)
        except ValueError as exc:
            raise SignError(f"Cannot sign TLS handshake with {algorithm}: {exc}") from exc
        _logger.debug("Signed TLS handshake message algorithm=%s", algorithm)
        return bytearray(signature)


def handshake_settings(config: TlsClientConfig) -> HandshakeSettings:
    settings = HandshakeSettings()
    settings.minVersion = TLSLITE_VERSIONS[config.min_version]
    settings.maxVersion = (3, 4)
    settings.rsaSigHashes = list(SIGNATURE_HASHES)
    return settings


def tlslite_certificate_chain(credential: Credential) -> X509CertChain:
    certificates = []
    for der in credential.certificate_chain:
        certificate = X509()
        certificate.parseBinary(bytearray(der))
        certificates.append(certificate)
    return X509CertChain(certificates)


def load_trust_store(config: TlsClientConfig) -> Store:
    """Trusted roots from ca_file and ca_path, or the system bundle when neither is set."""
    paths: list[Path] = []
    if config.ca_file:
        paths.append(Path(config.ca_file))
    if config.ca_path:
        paths.extend(sorted(p for p in Path(config.ca_path).iterdir() if p.is_file()))
    if not config.ca_file and not config.ca_path:
        default_cafile = ssl.get_default_verify_paths().cafile
        if default_cafile:
            paths.append(Path(default_cafile))

    certificates: list[x509.Certificate] = []
    for path in paths:
        try:
            certificates.extend(x509.load_pem_x509_certificates(path.read_bytes()))
        except (OSError, ValueError) as exc:
            raise HsmConfigurationError(
                f"Failed to load CA certificates from {path}: {format_exception(exc)}"
            ) from exc
    if not certificates:
        raise HsmConfigurationError(
            "Peer verification needs trusted CA certificates; set HSM_TLS_CA_FILE."
        )
    return Store(certificates)


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def verify_server_certificate(connection: TLSConnection, host: str, store: Store) -> None:
    chain = connection.session.serverCertChain
    if chain is None or not chain.x509List:
        raise TlsHandshakeError(f"Server {host} presented no certificate.")
    certificates = [x509.load_der_x509_certificate(bytes(cert.bytes)) for cert in chain.x509List]
    if _is_ip_address(host):
        subject: x509.GeneralName = x509.IPAddress(ipaddress.ip_address(host))
    else:
        subject = x509.DNSName(host)

    verifier = PolicyBuilder().store(store).build_server_verifier(subject)
    try:
        verifier.verify(certificates[0], certificates[1:])
    except VerificationError as exc:
        raise TlsHandshakeError(
            f"Server certificate verification failed for {host}: {exc}"
        ) from exc


def open_tls_connection(
    config: TlsClientConfig,
    host: str,
    port: int = http.client.HTTPS_PORT,
    *,
    timeout: Any = None,
) -> TLSConnection:
    """
    Connect to host:port and complete a client-authenticated TLS handshake.

    The client certificate is config.client_credential; its signer produces
    the CertificateVerify signature. The server chain is checked against the
    configured roots and host name unless verification was explicitly
    disabled.
    """
    credential = config.client_credential
    if credential is None:
        raise HsmConfigurationError("TLS config carries no client credential.")
    store: Store | None = None
    if config.verify_peer:
        if not config.check_hostname:
            raise HsmConfigurationError(
                "Host name checks cannot be turned off while peer verification is on."
            )
        store = load_trust_store(config)
    private_key = HsmRSAKey(credential.signer)
    chain = tlslite_certificate_chain(credential)

    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        raise TlsHandshakeError(
            f"Failed to connect to {host}:{port}: {format_exception(exc)}"
        ) from exc

    connection = TLSConnection(sock)
    try:
        connection.handshakeClientCert(
            chain,
            private_key,
            settings=handshake_settings(config),
            serverName=None if _is_ip_address(host) else host,
        )
        if store is not None:
            verify_server_certificate(connection, host, store)
        else:
            _logger.warning("INSECURE: server certificate of %s was not verified.", host)
    except (TLSError, OSError) as exc:
        sock.close()
        _logger.error("TLS handshake failed host=%s port=%s: %s", host, port, format_exception(exc))
        raise TlsHandshakeError(
            f"TLS handshake with {host}:{port} failed: {format_exception(exc)}"
        ) from exc
    except BaseException:
        sock.close()
        raise

    _logger.info(
        "TLS connection established host=%s port=%s version=%s subject=%s",
        host,
        port,
        connection.version,
        credential.leaf.subject.human_friendly,
    )
    return connection


class HsmHTTPSConnection(http.client.HTTPConnection):
    """http.client connection whose TLS client authentication signs in the HSM."""

    default_port = http.client.HTTPS_PORT

    def __init__(
        self,
        host: str,
        port: int | None = None,
        *,
        tls_config: TlsClientConfig,
        timeout: Any = None,
    ) -> None:
        super().__init__(host, port, timeout=timeout)
        self.tls_config = tls_config

    def connect(self) -> None:
        self.sock = open_tls_connection(self.tls_config, self.host, self.port, timeout=self.timeout)

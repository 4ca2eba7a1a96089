"""TLS client credentials backed by PKCS#11 HSM-resident private keys."""

from .algorithms import (
    DIGEST_SIGNATURE_ALGORITHMS,
    TLS_SIGNATURE_SCHEME_CODES,
    TLS_SIGNATURE_SCHEMES,
    DigestSignatureAlgorithm,
    list_signature_algorithms,
    resolve_signature_algorithm,
)
from .client import HsmTlsClient
from .config import HsmConfig
from .credential import Credential, assemble_credential
from .exceptions import (
    AuthenticationError,
    CertificateParseError,
    HsmClientError,
    HsmConfigurationError,
    HsmOperationError,
    KeyMismatchError,
    KeyNotFoundError,
    ModuleLoadError,
    NoUsableSlotError,
    SessionClosedError,
    SessionOpenError,
    SignError,
    TlsHandshakeError,
    TokenNotFoundError,
)
from .handshake import HsmHTTPSConnection, HsmRSAKey, open_tls_connection
from .keys import KeyHandle, find_private_key, find_public_key
from .logging_utils import configure_logging
from .session import HsmModule, HsmSession, SessionState
from .signer import Pkcs11Signer, SigningCapability, SoftwareSigner, verify_signature
from .tls import TlsClientConfig, attach_credential, build_ssl_context
from .x509_ops import load_certificate, load_certificate_chain, load_certificate_chain_file

__all__ = [
    "DIGEST_SIGNATURE_ALGORITHMS",
    "TLS_SIGNATURE_SCHEMES",
    "TLS_SIGNATURE_SCHEME_CODES",
    "AuthenticationError",
    "CertificateParseError",
    "Credential",
    "DigestSignatureAlgorithm",
    "HsmClientError",
    "HsmConfig",
    "HsmConfigurationError",
    "HsmHTTPSConnection",
    "HsmModule",
    "HsmOperationError",
    "HsmRSAKey",
    "HsmSession",
    "HsmTlsClient",
    "KeyHandle",
    "KeyMismatchError",
    "KeyNotFoundError",
    "ModuleLoadError",
    "NoUsableSlotError",
    "Pkcs11Signer",
    "SessionClosedError",
    "SessionOpenError",
    "SessionState",
    "SignError",
    "SigningCapability",
    "SoftwareSigner",
    "TlsClientConfig",
    "TlsHandshakeError",
    "TokenNotFoundError",
    "assemble_credential",
    "attach_credential",
    "build_ssl_context",
    "configure_logging",
    "find_private_key",
    "find_public_key",
    "list_signature_algorithms",
    "load_certificate",
    "load_certificate_chain",
    "load_certificate_chain_file",
    "open_tls_connection",
    "resolve_signature_algorithm",
    "verify_signature",
]

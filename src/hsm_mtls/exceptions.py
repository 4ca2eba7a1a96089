class HsmClientError(RuntimeError):
    """Base client error."""


class HsmConfigurationError(HsmClientError):
    """Configuration is invalid or incomplete."""


class HsmOperationError(HsmClientError):
    """An HSM operation failed."""

    kind = "operation_failed"


class ModuleLoadError(HsmOperationError):
    """The PKCS#11 module could not be loaded or initialized."""

    kind = "module_load_failed"


class NoUsableSlotError(HsmOperationError):
    """No slot with a token present was found."""

    kind = "no_usable_slot"


class TokenNotFoundError(HsmOperationError):
    """The configured token label or slot does not exist."""

    kind = "token_not_found"


class SessionOpenError(HsmOperationError):
    """A session could not be opened on the selected token."""

    kind = "session_open_failed"


class AuthenticationError(HsmOperationError):
    """User login was rejected by the token."""

    kind = "authentication_failed"


class KeyNotFoundError(HsmOperationError):
    """No usable key object matched the lookup."""

    kind = "key_not_found"


class SignError(HsmOperationError):
    """The token failed to produce a signature."""

    kind = "sign_failed"


class KeyMismatchError(HsmOperationError):
    """The certificate public key does not belong to the signing key."""

    kind = "key_mismatch"


class CertificateParseError(HsmOperationError):
    """A certificate could not be decoded."""

    kind = "certificate_parse_failed"


class SessionClosedError(HsmOperationError):
    """A session or key handle was used after teardown."""

    kind = "session_closed"


class TlsHandshakeError(HsmOperationError):
    """The TLS handshake or server certificate verification failed."""

    kind = "tls_handshake_failed"


def format_exception(exc: BaseException) -> str:
    details = str(exc).strip()
    if not details and getattr(exc, "args", None):
        details = ", ".join(str(a) for a in exc.args if a)
    if details:
        return f"{type(exc).__name__}: {details}"
    return type(exc).__name__

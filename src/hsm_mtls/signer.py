"""
Signing capabilities consumed by TLS client authentication.

A TLS stack needs two things from the holder of a client key: the public
key, and a signature over a digest it has already computed. SigningCapability
captures exactly that, so HSM-resident and in-memory keys are interchangeable.
"""

from __future__ import annotations

import logging
from typing import Protocol, Union, runtime_checkable

from asn1crypto import keys
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed
from pkcs11 import KeyType

from .algorithms import AlgorithmHint, DigestSignatureAlgorithm, resolve_signature_algorithm
from .exceptions import KeyNotFoundError, SignError, format_exception
from .keys import KeyHandle, find_private_key, find_public_key
from .session import HsmSession
from .x509_ops import (
    ecdsa_signature_to_der,
    pkcs11_public_key_to_public_key,
    public_key_to_public_key_info,
)

_logger = logging.getLogger("hsm_mtls.signer")

SoftwarePrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]


@runtime_checkable
class SigningCapability(Protocol):
    """What a TLS client-auth path needs from a private key holder."""

    def public_key(self) -> PublicKeyTypes:
        ...

    def public_key_info(self) -> keys.PublicKeyInfo:
        ...

    def sign(self, digest: bytes, algorithm: AlgorithmHint) -> bytes:
        ...


def key_type_of(public_key: PublicKeyTypes) -> KeyType:
    if isinstance(public_key, rsa.RSAPublicKey):
        return KeyType.RSA
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return KeyType.EC
    raise ValueError(f"Unsupported public key type: {type(public_key).__name__}")


def key_size_of(public_key: PublicKeyTypes) -> int:
    if isinstance(public_key, rsa.RSAPublicKey):
        return public_key.key_size
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return public_key.curve.key_size
    raise ValueError(f"Unsupported public key type: {type(public_key).__name__}")


def _check_key_type(spec: DigestSignatureAlgorithm, key_type: KeyType) -> None:
    if spec.key_type != key_type:
        raise ValueError(
            f"Algorithm '{spec.name}' requires key type {spec.key_type.name}, "
            f"but key type is {key_type.name}."
        )


def verify_signature(
    public_key: PublicKeyTypes,
    digest: bytes,
    signature: bytes,
    algorithm: AlgorithmHint,
) -> bool:
    """Check a digest signature; False means the signature does not verify."""
    spec = resolve_signature_algorithm(algorithm)
    _check_key_type(spec, key_type_of(public_key))
    spec.prepare_payload(digest)
    prehashed = Prehashed(spec.hash_algorithm())
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, digest, spec.rsa_padding(), prehashed)
        else:
            public_key.verify(signature, digest, ec.ECDSA(prehashed))
    except InvalidSignature:
        return False
    return True


class Pkcs11Signer:
    """
    SigningCapability backed by a private key that stays inside the HSM.

    The signer borrows its session and key handle and must not outlive the
    session. The public key is read from the token once, at construction.
    """

    def __init__(self, session: HsmSession, key_handle: KeyHandle) -> None:
        if key_handle.session is not session:
            raise ValueError("Key handle belongs to a different session.")
        self._session = session
        self._key = key_handle
        self._public_key = self._load_public_key()
        self._public_key_info = public_key_to_public_key_info(self._public_key)

    @classmethod
    def from_label(cls, session: HsmSession, label: str, *, strict: bool = False) -> "Pkcs11Signer":
        return cls(session, find_private_key(session, label, strict=strict))

    @property
    def key_label(self) -> str:
        return self._key.label

    @property
    def key_type(self) -> KeyType:
        return self._key.key_type

    @property
    def key_size(self) -> int:
        return key_size_of(self._public_key)

    def _load_public_key(self) -> PublicKeyTypes:
        with self._session.lock:
            source = find_public_key(self._session, self._key)
            if source is None and self._key.key_type == KeyType.RSA:
                # RSA private key objects carry the modulus and public exponent.
                source = self._key.require_live()
            if source is None:
                raise KeyNotFoundError(
                    f"No public key object is paired with private key '{self._key.label}'."
                )
            try:
                return pkcs11_public_key_to_public_key(source)
            except Exception as exc:
                _logger.exception("Failed to read public key for label=%s", self._key.label)
                raise KeyNotFoundError(
                    f"Public key for '{self._key.label}' is not readable: {format_exception(exc)}"
                ) from exc

    def public_key(self) -> PublicKeyTypes:
        return self._public_key

    def public_key_info(self) -> keys.PublicKeyInfo:
        return self._public_key_info

    def sign(self, digest: bytes, algorithm: AlgorithmHint) -> bytes:
        """
        Sign a finalized digest on the token.

        The digest is not hashed again: PKCS#1 v1.5 wraps it in a DigestInfo
        for CKM_RSA_PKCS, PSS and ECDSA hand it to the token as is. ECDSA
        output is returned DER encoded.
        """
        spec = resolve_signature_algorithm(algorithm)
        _check_key_type(spec, self.key_type)
        payload = spec.prepare_payload(digest)

        with self._session.lock:
            private_key = self._key.require_live()
            try:
                signature = private_key.sign(
                    payload,
                    mechanism=spec.mechanism,
                    mechanism_param=spec.mechanism_param,
                )
            except Exception as exc:
                _logger.exception(
                    "Signing failed key_label=%s algorithm=%s", self.key_label, spec.name
                )
                raise SignError(
                    f"Signing failed for algorithm '{spec.name}': {format_exception(exc)}"
                ) from exc

        if spec.key_type == KeyType.EC:
            signature = ecdsa_signature_to_der(signature)
        _logger.debug(
            "Signed digest key_label=%s algorithm=%s signature_size=%d",
            self.key_label,
            spec.name,
            len(signature),
        )
        return signature


class SoftwareSigner:
    """SigningCapability over an in-memory cryptography private key."""

    def __init__(self, private_key: SoftwarePrivateKey) -> None:
        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise TypeError("SoftwareSigner supports RSA and EC private keys.")
        self._private_key = private_key
        self._public_key = private_key.public_key()
        self._public_key_info = public_key_to_public_key_info(self._public_key)

    @property
    def key_type(self) -> KeyType:
        return key_type_of(self._public_key)

    def public_key(self) -> PublicKeyTypes:
        return self._public_key

    def public_key_info(self) -> keys.PublicKeyInfo:
        return self._public_key_info

    def sign(self, digest: bytes, algorithm: AlgorithmHint) -> bytes:
        spec = resolve_signature_algorithm(algorithm)
        _check_key_type(spec, self.key_type)
        spec.prepare_payload(digest)
        prehashed = Prehashed(spec.hash_algorithm())
        if isinstance(self._private_key, rsa.RSAPrivateKey):
            return self._private_key.sign(digest, spec.rsa_padding(), prehashed)
        return self._private_key.sign(digest, ec.ECDSA(prehashed))

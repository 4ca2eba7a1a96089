"""Digest-level signature algorithms and their PKCS#11 mechanisms."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from pkcs11 import KeyType, Mechanism, MGF


@dataclass(frozen=True)
class DigestSignatureAlgorithm:
    """PKCS#11 mechanism mapping for signing an already computed digest."""

    name: str
    key_type: KeyType
    mechanism: Mechanism
    hash_name: str
    digest_size: int
    mechanism_param: tuple[Mechanism, MGF, int] | None = None
    digest_info_prefix: bytes | None = None

    @property
    def is_pss(self) -> bool:
        return self.mechanism == Mechanism.RSA_PKCS_PSS

    def prepare_payload(self, digest: bytes) -> bytes:
        """Return the bytes handed to the token for this digest."""
        if len(digest) != self.digest_size:
            raise ValueError(
                f"Digest length mismatch for {self.hash_name}: "
                f"expected {self.digest_size} bytes, got {len(digest)}."
            )
        if self.digest_info_prefix is not None:
            return self.digest_info_prefix + digest
        return digest

    def hash_algorithm(self) -> hashes.HashAlgorithm:
        return _HASHES[self.hash_name]()

    def rsa_padding(self) -> padding.AsymmetricPadding:
        if self.key_type != KeyType.RSA:
            raise ValueError(f"Algorithm '{self.name}' does not use RSA padding.")
        if self.is_pss:
            return padding.PSS(
                mgf=padding.MGF1(self.hash_algorithm()),
                salt_length=self.digest_size,
            )
        return padding.PKCS1v15()


_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

# DER DigestInfo headers (RFC 8017 section 9.2, note 1).
_DIGEST_INFO_PREFIXES: dict[str, bytes] = {
    "sha256": bytes.fromhex("3031300d060960864801650304020105000420"),
    "sha384": bytes.fromhex("3041300d060960864801650304020205000430"),
    "sha512": bytes.fromhex("3051300d060960864801650304020305000440"),
}

_HASH_MECHANISMS: dict[str, tuple[Mechanism, MGF, int]] = {
    "sha256": (Mechanism.SHA256, MGF.SHA256, 32),
    "sha384": (Mechanism.SHA384, MGF.SHA384, 48),
    "sha512": (Mechanism.SHA512, MGF.SHA512, 64),
}


def _build_algorithms() -> dict[str, DigestSignatureAlgorithm]:
    algorithms: dict[str, DigestSignatureAlgorithm] = {}
    for hash_name, (hash_mechanism, mgf, size) in _HASH_MECHANISMS.items():
        algorithms[f"rsa_pkcs1v15_{hash_name}"] = DigestSignatureAlgorithm(
            name=f"rsa_pkcs1v15_{hash_name}",
            key_type=KeyType.RSA,
            mechanism=Mechanism.RSA_PKCS,
            hash_name=hash_name,
            digest_size=size,
            digest_info_prefix=_DIGEST_INFO_PREFIXES[hash_name],
        )
        algorithms[f"rsa_pss_{hash_name}"] = DigestSignatureAlgorithm(
            name=f"rsa_pss_{hash_name}",
            key_type=KeyType.RSA,
            mechanism=Mechanism.RSA_PKCS_PSS,
            hash_name=hash_name,
            digest_size=size,
            mechanism_param=(hash_mechanism, mgf, size),
        )
        algorithms[f"ecdsa_{hash_name}"] = DigestSignatureAlgorithm(
            name=f"ecdsa_{hash_name}",
            key_type=KeyType.EC,
            mechanism=Mechanism.ECDSA,
            hash_name=hash_name,
            digest_size=size,
        )
    return algorithms


DIGEST_SIGNATURE_ALGORITHMS: dict[str, DigestSignatureAlgorithm] = _build_algorithms()

# TLS SignatureScheme names (RFC 8446 section 4.2.3) mapped onto the table above.
TLS_SIGNATURE_SCHEMES: dict[str, str] = {
    "rsa_pkcs1_sha256": "rsa_pkcs1v15_sha256",
    "rsa_pkcs1_sha384": "rsa_pkcs1v15_sha384",
    "rsa_pkcs1_sha512": "rsa_pkcs1v15_sha512",
    "rsa_pss_rsae_sha256": "rsa_pss_sha256",
    "rsa_pss_rsae_sha384": "rsa_pss_sha384",
    "rsa_pss_rsae_sha512": "rsa_pss_sha512",
    "ecdsa_secp256r1_sha256": "ecdsa_sha256",
    "ecdsa_secp384r1_sha384": "ecdsa_sha384",
    "ecdsa_secp521r1_sha512": "ecdsa_sha512",
}

TLS_SIGNATURE_SCHEME_CODES: dict[int, str] = {
    0x0401: "rsa_pkcs1_sha256",
    0x0501: "rsa_pkcs1_sha384",
    0x0601: "rsa_pkcs1_sha512",
    0x0403: "ecdsa_secp256r1_sha256",
    0x0503: "ecdsa_secp384r1_sha384",
    0x0603: "ecdsa_secp521r1_sha512",
    0x0804: "rsa_pss_rsae_sha256",
    0x0805: "rsa_pss_rsae_sha384",
    0x0806: "rsa_pss_rsae_sha512",
}

AlgorithmHint = Union[str, int, DigestSignatureAlgorithm]


def _normalize_algorithm_name(algorithm: str) -> str:
    return algorithm.strip().lower().replace("-", "_")


def list_signature_algorithms() -> tuple[str, ...]:
    return tuple(sorted(DIGEST_SIGNATURE_ALGORITHMS)) + tuple(sorted(TLS_SIGNATURE_SCHEMES))


def resolve_signature_algorithm(hint: AlgorithmHint) -> DigestSignatureAlgorithm:
    """
    Resolve an algorithm hint into a digest signature algorithm.

    Accepts a table name (``rsa_pss_sha256``), a TLS SignatureScheme name
    (``rsa_pss_rsae_sha256``), a SignatureScheme code point (``0x0804``)
    or an already resolved DigestSignatureAlgorithm.
    """
    if isinstance(hint, DigestSignatureAlgorithm):
        return hint
    if isinstance(hint, bool):
        raise TypeError("Algorithm hint must be a name, code point, or algorithm.")
    if isinstance(hint, int):
        scheme = TLS_SIGNATURE_SCHEME_CODES.get(hint)
        if scheme is None:
            raise ValueError(f"Unsupported TLS SignatureScheme code point 0x{hint:04x}.")
        return DIGEST_SIGNATURE_ALGORITHMS[TLS_SIGNATURE_SCHEMES[scheme]]
    if not isinstance(hint, str):
        raise TypeError("Algorithm hint must be a name, code point, or algorithm.")

    normalized = _normalize_algorithm_name(hint)
    normalized = TLS_SIGNATURE_SCHEMES.get(normalized, normalized)
    algorithm = DIGEST_SIGNATURE_ALGORITHMS.get(normalized)
    if algorithm is None:
        available = ", ".join(list_signature_algorithms())
        raise ValueError(
            f"Unsupported digest signing algorithm '{hint}'. Available: {available}"
        )
    return algorithm


def default_signature_algorithm(key_type: KeyType, key_size: int | None = None) -> DigestSignatureAlgorithm:
    """Pick the algorithm used for self-tests when the caller does not choose one."""
    if key_type == KeyType.RSA:
        return DIGEST_SIGNATURE_ALGORITHMS["rsa_pss_sha256"]
    if key_type == KeyType.EC:
        if key_size is not None and key_size > 384:
            return DIGEST_SIGNATURE_ALGORITHMS["ecdsa_sha512"]
        if key_size is not None and key_size > 256:
            return DIGEST_SIGNATURE_ALGORITHMS["ecdsa_sha384"]
        return DIGEST_SIGNATURE_ALGORITHMS["ecdsa_sha256"]
    raise ValueError(f"Unsupported key type for digest signing: {key_type}")

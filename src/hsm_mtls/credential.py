from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Iterable

from asn1crypto import x509

from .algorithms import AlgorithmHint, default_signature_algorithm, resolve_signature_algorithm
from .exceptions import KeyMismatchError
from .signer import SigningCapability, key_size_of, key_type_of, verify_signature
from .x509_ops import (
    CertificateInput,
    canonical_public_key_der,
    dump_certificate_pem,
    load_certificate_chain,
    public_key_info_to_public_key,
)

_logger = logging.getLogger("hsm_mtls.credential")


@dataclass(frozen=True)
class Credential:
    """
    A certificate chain paired with the signer holding the leaf's private key.

    Build instances with assemble_credential(), which enforces that the leaf
    certificate and the signer share one public key.
    """

    certificate_chain: tuple[bytes, ...]
    leaf: x509.Certificate
    signer: SigningCapability

    @property
    def leaf_der(self) -> bytes:
        return self.certificate_chain[0]

    def chain_pem(self) -> bytes:
        return b"".join(
            dump_certificate_pem(x509.Certificate.load(der)) for der in self.certificate_chain
        )


def _self_test(
    leaf: x509.Certificate,
    signer: SigningCapability,
    algorithm: AlgorithmHint | None,
) -> None:
    certificate_key = public_key_info_to_public_key(leaf.public_key)
    if algorithm is None:
        spec = default_signature_algorithm(
            key_type_of(certificate_key), key_size_of(certificate_key)
        )
    else:
        spec = resolve_signature_algorithm(algorithm)
    digest = secrets.token_bytes(spec.digest_size)
    signature = signer.sign(digest, spec)
    if not verify_signature(certificate_key, digest, signature, spec):
        raise KeyMismatchError(
            f"Signer output does not verify under the certificate key ({spec.name})."
        )
    _logger.info("Credential self-test passed algorithm=%s", spec.name)


def assemble_credential(
    certificate_chain: CertificateInput | Iterable[CertificateInput],
    signer: SigningCapability,
    *,
    self_test: bool = False,
    self_test_algorithm: AlgorithmHint | None = None,
) -> Credential:
    """
    Bind a certificate chain (leaf first) to a signer.

    Raises KeyMismatchError when the leaf certificate's public key is not
    the signer's public key. With self_test=True a random digest is also
    signed and verified against the certificate key.
    """
    certificates = load_certificate_chain(certificate_chain)
    leaf = certificates[0]

    certificate_key = canonical_public_key_der(leaf.public_key)
    signer_key = canonical_public_key_der(signer.public_key())
    if certificate_key != signer_key:
        _logger.error(
            "Certificate public key does not match signer subject=%s",
            leaf.subject.human_friendly,
        )
        raise KeyMismatchError(
            f"Public key of certificate '{leaf.subject.human_friendly}' "
            "does not match the signing key."
        )

    if self_test:
        _self_test(leaf, signer, self_test_algorithm)

    credential = Credential(
        certificate_chain=tuple(certificate.dump() for certificate in certificates),
        leaf=leaf,
        signer=signer,
    )
    _logger.info(
        "Assembled credential subject=%s chain_length=%d",
        leaf.subject.human_friendly,
        len(certificates),
    )
    return credential

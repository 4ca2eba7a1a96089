from __future__ import annotations

from pathlib import Path
from typing import Iterable, Union

import pkcs11
from asn1crypto import algos, core, keys, pem, x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from pkcs11 import Attribute, KeyType

from .exceptions import CertificateParseError

CertificateInput = Union[bytes, str, x509.Certificate]


def _to_bytes(data: bytes | str) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return data


def load_certificate(data: CertificateInput) -> x509.Certificate:
    """Parse one PEM or DER certificate, forcing a full decode."""
    if isinstance(data, x509.Certificate):
        return data
    payload = _to_bytes(data)
    try:
        if pem.detect(payload):
            pem_type, _headers, payload = pem.unarmor(payload)
            if pem_type != "CERTIFICATE":
                raise ValueError(f"Expected PEM type 'CERTIFICATE', received '{pem_type}'.")
        certificate = x509.Certificate.load(payload)
        # asn1crypto parses lazily; touch the fields used later so garbage fails here.
        certificate.native
    except (ValueError, TypeError) as exc:
        raise CertificateParseError(f"Failed to parse certificate: {exc}") from exc
    return certificate


def load_certificate_chain(
    data: CertificateInput | Iterable[CertificateInput],
) -> tuple[x509.Certificate, ...]:
    """
    Parse a certificate chain, leaf first.

    Accepts a PEM bundle with several CERTIFICATE blocks, a single DER blob,
    or an iterable mixing any of those forms.
    """
    if isinstance(data, (bytes, str, x509.Certificate)):
        items: list[CertificateInput] = [data]
    else:
        items = list(data)

    chain: list[x509.Certificate] = []
    for item in items:
        if isinstance(item, x509.Certificate):
            chain.append(item)
            continue
        payload = _to_bytes(item)
        if pem.detect(payload):
            try:
                blocks = list(pem.unarmor(payload, multiple=True))
            except ValueError as exc:
                raise CertificateParseError(f"Invalid PEM bundle: {exc}") from exc
            for pem_type, _headers, der_bytes in blocks:
                if pem_type != "CERTIFICATE":
                    raise CertificateParseError(
                        f"Expected PEM type 'CERTIFICATE', received '{pem_type}'."
                    )
                chain.append(load_certificate(der_bytes))
        else:
            chain.append(load_certificate(payload))

    if not chain:
        raise CertificateParseError("Certificate chain is empty.")
    return tuple(chain)


def load_certificate_chain_file(path: str | Path) -> tuple[x509.Certificate, ...]:
    try:
        payload = Path(path).read_bytes()
    except OSError as exc:
        raise CertificateParseError(f"Failed to read certificate file {path}: {exc}") from exc
    return load_certificate_chain(payload)


def dump_certificate_pem(certificate: x509.Certificate) -> bytes:
    return pem.armor("CERTIFICATE", certificate.dump())


def public_key_to_public_key_info(public_key: PublicKeyTypes) -> keys.PublicKeyInfo:
    return keys.PublicKeyInfo.load(
        public_key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )


def public_key_info_to_public_key(info: keys.PublicKeyInfo) -> PublicKeyTypes:
    try:
        return serialization.load_der_public_key(info.dump())
    except (ValueError, TypeError) as exc:
        raise CertificateParseError(f"Unsupported or malformed public key: {exc}") from exc


def canonical_public_key_der(public_key: PublicKeyTypes | keys.PublicKeyInfo) -> bytes:
    """Re-encode a public key so that equal keys compare equal byte for byte."""
    if isinstance(public_key, keys.PublicKeyInfo):
        public_key = public_key_info_to_public_key(public_key)
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _ec_point_bytes(raw_point: bytes) -> bytes:
    # Tokens differ on whether CKA_EC_POINT is wrapped in a DER OCTET STRING.
    try:
        return core.OctetString.load(raw_point).native
    except ValueError:
        return raw_point


def pkcs11_public_key_to_public_key(key: pkcs11.Object) -> PublicKeyTypes:
    """
    Build a cryptography public key from a PKCS#11 key object.

    Works on public key objects and, for RSA, on private key objects that
    expose CKA_MODULUS and CKA_PUBLIC_EXPONENT.
    """
    key_type = key[Attribute.KEY_TYPE]
    if key_type == KeyType.RSA:
        modulus = key[Attribute.MODULUS]
        exponent = key[Attribute.PUBLIC_EXPONENT]
        if isinstance(modulus, bytes):
            modulus = int.from_bytes(modulus, byteorder="big")
        if isinstance(exponent, bytes):
            exponent = int.from_bytes(exponent, byteorder="big")
        return rsa.RSAPublicNumbers(exponent, modulus).public_key()

    if key_type == KeyType.EC:
        info = keys.PublicKeyInfo(
            {
                "algorithm": {
                    "algorithm": "ec",
                    "parameters": keys.ECDomainParameters.load(key[Attribute.EC_PARAMS]),
                },
                "public_key": _ec_point_bytes(key[Attribute.EC_POINT]),
            }
        )
        public_key = public_key_info_to_public_key(info)
        if not isinstance(public_key, ec.EllipticCurvePublicKey):
            raise ValueError("EC_PARAMS did not describe an elliptic curve key.")
        return public_key

    raise ValueError(f"Unsupported public key type: {key_type}")


def ecdsa_signature_to_der(signature: bytes) -> bytes:
    """
    PKCS#11 CKM_ECDSA returns raw r||s; X.509 and TLS carry a DER sequence.

    Signatures that already decode as DER are returned unchanged.
    """
    try:
        algos.DSASignature.load(signature, strict=True).native
        return signature
    except ValueError:
        pass
    if not signature or len(signature) % 2 != 0:
        raise ValueError("Invalid raw ECDSA signature length.")
    half = len(signature) // 2
    r = int.from_bytes(signature[:half], byteorder="big")
    s = int.from_bytes(signature[half:], byteorder="big")
    return algos.DSASignature({"r": r, "s": s}).dump()


def describe_certificate(certificate: x509.Certificate) -> dict[str, str]:
    return {
        "subject": certificate.subject.human_friendly,
        "issuer": certificate.issuer.human_friendly,
        "serial_number": format(certificate.serial_number, "x"),
        "not_after": certificate["tbs_certificate"]["validity"]["not_after"].native.isoformat(),
        "public_key_algorithm": certificate.public_key.algorithm,
    }

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

import pkcs11
import pytest
from asn1crypto import core
from asn1crypto import keys as asn1_keys
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed, decode_dss_signature
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from pkcs11 import Attribute, KeyType, Mechanism, ObjectClass, _pkcs11

from hsm_mtls import HsmConfig, HsmModule
from hsm_mtls.logging_utils import LOGGER_NAMESPACE

FAKE_TOKEN_LABEL = "fake-token"
FAKE_USER_PIN = "123456"

_PREFIX_HASHES = {
    bytes.fromhex("3031300d060960864801650304020105000420"): hashes.SHA256,
    bytes.fromhex("3041300d060960864801650304020205000430"): hashes.SHA384,
    bytes.fromhex("3051300d060960864801650304020305000440"): hashes.SHA512,
}
_MECHANISM_HASHES = {
    Mechanism.SHA256: hashes.SHA256,
    Mechanism.SHA384: hashes.SHA384,
    Mechanism.SHA512: hashes.SHA512,
}
_DIGEST_SIZE_HASHES = {32: hashes.SHA256, 48: hashes.SHA384, 64: hashes.SHA512}


class FakeObject:
    """Token object exposing attributes the way python-pkcs11 objects do."""

    def __init__(self, token: "FakeToken", attributes: dict[Attribute, Any]) -> None:
        self.token = token
        self.attributes = attributes

    def __getitem__(self, attribute: Attribute) -> Any:
        if attribute not in self.attributes:
            raise KeyError(attribute)
        return self.attributes[attribute]

    def matches(self, template: dict[Attribute, Any]) -> bool:
        return all(self.attributes.get(key) == value for key, value in template.items())


class FakePrivateKey(FakeObject):
    def __init__(
        self,
        token: "FakeToken",
        attributes: dict[Attribute, Any],
        crypto_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey,
    ) -> None:
        super().__init__(token, attributes)
        self.crypto_key = crypto_key

    def sign(self, data: bytes, mechanism: Any = None, mechanism_param: Any = None) -> bytes:
        token = self.token
        token.events.append("sign")
        with token.sign_guard:
            token.active_signs += 1
            if token.active_signs > 1:
                token.overlapping_signs += 1
        try:
            if token.sign_delay:
                time.sleep(token.sign_delay)
            if token.fail_sign:
                raise pkcs11.exceptions.DeviceError()
            return self._sign(data, mechanism, mechanism_param)
        finally:
            with token.sign_guard:
                token.active_signs -= 1

    def _sign(self, data: bytes, mechanism: Any, mechanism_param: Any) -> bytes:
        key = self.crypto_key
        if mechanism == Mechanism.RSA_PKCS:
            for prefix, hash_type in _PREFIX_HASHES.items():
                if data.startswith(prefix):
                    digest = data[len(prefix):]
                    return key.sign(digest, padding.PKCS1v15(), Prehashed(hash_type()))
            raise pkcs11.exceptions.DataInvalid()
        if mechanism == Mechanism.RSA_PKCS_PSS:
            hash_mechanism, _mgf, salt_length = mechanism_param
            hash_type = _MECHANISM_HASHES[hash_mechanism]
            return key.sign(
                data,
                padding.PSS(mgf=padding.MGF1(hash_type()), salt_length=salt_length),
                Prehashed(hash_type()),
            )
        if mechanism == Mechanism.ECDSA:
            hash_type = _DIGEST_SIZE_HASHES[len(data)]
            der = key.sign(data, ec.ECDSA(Prehashed(hash_type())))
            r, s = decode_dss_signature(der)
            size = (key.curve.key_size + 7) // 8
            # Tokens return raw r||s for CKM_ECDSA.
            return r.to_bytes(size, "big") + s.to_bytes(size, "big")
        raise pkcs11.exceptions.MechanismInvalid()


class FakeSearchOperation:
    """Mirrors python-pkcs11's SearchIter: C_FindObjectsInit on enter, Final on exit."""

    def __init__(self, session: "FakeSession", template: dict[Attribute, Any]) -> None:
        self._session = session
        self._template = template

    def __enter__(self) -> "FakeSearchOperation":
        if self._session.operation_active:
            raise pkcs11.exceptions.OperationActive()
        self._session.operation_active = True
        self._session.token.events.append("find_init")
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._session.operation_active = False
        self._session.token.events.append("find_final")

    def __iter__(self) -> Iterator[FakeObject]:
        for obj in list(self._session.token.objects):
            if self._session.token.fail_search:
                raise pkcs11.exceptions.DeviceError()
            if obj.matches(self._template):
                yield obj


class FakeSession:
    def __init__(self, token: "FakeToken", logged_in: bool) -> None:
        self.token = token
        self.logged_in = logged_in
        self.closed = False
        self.operation_active = False

    def get_objects(self, attrs: dict[Attribute, Any] | None = None) -> Iterator[FakeObject]:
        # A generator, like python-pkcs11 0.10: nothing runs until the first next().
        if self.closed:
            raise pkcs11.exceptions.SessionClosed()
        with FakeSearchOperation(self, attrs or {}) as operation:
            yield from operation

    def close(self) -> None:
        if self.logged_in:
            self.token.events.append("logout")
            self.logged_in = False
        self.token.events.append("close_session")
        self.closed = True
        if self.token.fail_close:
            raise pkcs11.exceptions.DeviceRemoved()


class FakeToken:
    def __init__(self, label: str, pin: str = FAKE_USER_PIN) -> None:
        self.label = label
        self.pin = pin
        self.objects: list[FakeObject] = []
        self.events: list[str] = []
        self.already_logged_in = False
        self.fail_close = False
        self.fail_sign = False
        self.fail_search = False
        self.sign_delay = 0.0
        self.sign_guard = threading.Lock()
        self.active_signs = 0
        self.overlapping_signs = 0
        self.sessions: list[FakeSession] = []

    def open(self, rw: bool = False, user_pin: str | None = None) -> FakeSession:
        self.events.append("open_session")
        if user_pin is not None:
            if self.already_logged_in:
                raise pkcs11.exceptions.UserAlreadyLoggedIn()
            if user_pin != self.pin:
                raise pkcs11.exceptions.PinIncorrect()
            self.events.append("login")
        session = FakeSession(self, logged_in=user_pin is not None)
        self.sessions.append(session)
        return session

    def add_rsa_key(
        self,
        label: str,
        key: rsa.RSAPrivateKey,
        *,
        key_id: bytes | None = b"\x01",
        with_public: bool = True,
        public_label: str | None = None,
    ) -> None:
        numbers = key.public_key().public_numbers()
        modulus = numbers.n.to_bytes((numbers.n.bit_length() + 7) // 8, "big")
        exponent = numbers.e.to_bytes((numbers.e.bit_length() + 7) // 8, "big")
        private_attributes = {
            Attribute.CLASS: ObjectClass.PRIVATE_KEY,
            Attribute.LABEL: label,
            Attribute.KEY_TYPE: KeyType.RSA,
            Attribute.MODULUS: modulus,
            Attribute.PUBLIC_EXPONENT: exponent,
        }
        if key_id is not None:
            private_attributes[Attribute.ID] = key_id
        self.objects.append(FakePrivateKey(self, private_attributes, key))
        if with_public:
            public_attributes = {
                Attribute.CLASS: ObjectClass.PUBLIC_KEY,
                Attribute.LABEL: public_label or label,
                Attribute.KEY_TYPE: KeyType.RSA,
                Attribute.MODULUS: modulus,
                Attribute.PUBLIC_EXPONENT: exponent,
            }
            if key_id is not None:
                public_attributes[Attribute.ID] = key_id
            self.objects.append(FakeObject(self, public_attributes))

    def add_ec_key(
        self,
        label: str,
        key: ec.EllipticCurvePrivateKey,
        *,
        key_id: bytes | None = b"\x02",
        with_public: bool = True,
    ) -> None:
        ec_params = asn1_keys.ECDomainParameters({"named": key.curve.name}).dump()
        point = key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        )
        private_attributes = {
            Attribute.CLASS: ObjectClass.PRIVATE_KEY,
            Attribute.LABEL: label,
            Attribute.KEY_TYPE: KeyType.EC,
            Attribute.EC_PARAMS: ec_params,
        }
        if key_id is not None:
            private_attributes[Attribute.ID] = key_id
        self.objects.append(FakePrivateKey(self, private_attributes, key))
        if with_public:
            public_attributes = {
                Attribute.CLASS: ObjectClass.PUBLIC_KEY,
                Attribute.LABEL: label,
                Attribute.KEY_TYPE: KeyType.EC,
                Attribute.EC_PARAMS: ec_params,
                Attribute.EC_POINT: core.OctetString(point).dump(),
            }
            if key_id is not None:
                public_attributes[Attribute.ID] = key_id
            self.objects.append(FakeObject(self, public_attributes))

    def add_public_only(self, label: str, key: rsa.RSAPrivateKey) -> None:
        numbers = key.public_key().public_numbers()
        self.objects.append(
            FakeObject(
                self,
                {
                    Attribute.CLASS: ObjectClass.PUBLIC_KEY,
                    Attribute.LABEL: label,
                    Attribute.KEY_TYPE: KeyType.RSA,
                    Attribute.MODULUS: numbers.n.to_bytes(256, "big"),
                    Attribute.PUBLIC_EXPONENT: numbers.e.to_bytes(3, "big"),
                },
            )
        )

    def count(self, event: str) -> int:
        return self.events.count(event)


class FakeSlot:
    def __init__(self, slot_id: int, token: FakeToken) -> None:
        self.slot_id = slot_id
        self.token = token

    def get_token(self) -> FakeToken:
        return self.token


class FakeLib:
    """
    Stands in for python-pkcs11's compiled lib object.

    unload() runs C_Finalize and drops the function list for good; a later
    initialize() cannot bring it back, the same as the real wrapper.
    """

    def __init__(self, hsm: "FakeHsm", so: str) -> None:
        self._hsm = hsm
        self.so = so
        self.funclist: object | None = object()
        self.initialized = False
        self.initialize()

    def initialize(self) -> None:
        if self.funclist is not None and not self.initialized:
            self.initialized = True

    def finalize(self) -> None:
        if self.funclist is not None and self.initialized:
            self.initialized = False
            self._hsm.module_events.append("finalize")

    def unload(self) -> None:
        self.finalize()
        self.funclist = None

    def get_slots(self, token_present: bool = False) -> list[FakeSlot]:
        if self.funclist is None:
            raise RuntimeError("PKCS#11 function list is NULL")
        return list(self._hsm.slots)


@dataclass
class FakeHsm:
    module_path: Path
    token: FakeToken
    slots: list[FakeSlot] = field(default_factory=list)
    module_events: list[str] = field(default_factory=list)
    loads: list[str] = field(default_factory=list)
    libs: list[FakeLib] = field(default_factory=list)

    def config(self, **overrides: Any) -> HsmConfig:
        values: dict[str, Any] = {
            "module_path": str(self.module_path),
            "key_label": "client-rsa",
            "token_label": None,
        }
        values.update(overrides)
        return HsmConfig(**values)

    def load(self, so: str) -> FakeLib:
        self.loads.append(so)
        lib = FakeLib(self, so)
        self.libs.append(lib)
        return lib

    def events(self) -> list[str]:
        """Token events followed by module events, in the order they happened."""
        return self.token.events + self.module_events


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ec_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def ca_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP384R1())


@pytest.fixture(scope="session")
def make_certificate(
    ca_key: ec.EllipticCurvePrivateKey,
) -> Callable[..., bytes]:
    """Return a factory producing PEM client certificates for a public key."""

    def factory(public_key: Any, common_name: str = "mtls-client") -> bytes:
        now = datetime.now(timezone.utc)
        issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Issuing CA")])
        certificate = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(issuer)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + timedelta(days=30))
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .sign(ca_key, hashes.SHA384())
        )
        return certificate.public_bytes(serialization.Encoding.PEM)

    return factory


@pytest.fixture(scope="session")
def ca_certificate_pem(ca_key: ec.EllipticCurvePrivateKey) -> bytes:
    now = datetime.now(timezone.utc)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test Issuing CA")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .sign(ca_key, hashes.SHA384())
    )
    return certificate.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(autouse=True)
def _reset_module_registry() -> Any:
    yield
    HsmModule.finalize_all()


@pytest.fixture
def fake_hsm(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    rsa_key: rsa.RSAPrivateKey,
    ec_key: ec.EllipticCurvePrivateKey,
    other_rsa_key: rsa.RSAPrivateKey,
) -> FakeHsm:
    module_path = tmp_path / "libfakepkcs11.so"
    module_path.write_bytes(b"")

    token = FakeToken(FAKE_TOKEN_LABEL)
    token.add_rsa_key("client-rsa", rsa_key)
    token.add_ec_key("client-ec", ec_key)
    token.add_public_only("public-only", other_rsa_key)

    hsm = FakeHsm(module_path=module_path, token=token, slots=[FakeSlot(0, token)])

    # pkcs11.lib() and pkcs11.unload() stay real and keep their cache in
    # pkcs11._loaded; only the compiled loader is replaced.
    monkeypatch.setattr(pkcs11, "_loaded", {})
    monkeypatch.setattr(_pkcs11, "lib", hsm.load)
    monkeypatch.setenv("HSM_USER_PIN", FAKE_USER_PIN)
    return hsm


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Any:
    yield
    logger = logging.getLogger(LOGGER_NAMESPACE)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)

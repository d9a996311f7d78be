from __future__ import annotations

import itertools
import logging
from pathlib import Path
from typing import Any, Iterator

import pkcs11
import pkcs11.util.ec as ec_util
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils
from pkcs11 import Attribute, KeyType, ObjectClass

from hsm_signing import SigningDemoConfig

CURVE_OIDS = {
    "secp256r1": "1.2.840.10045.3.1.7",
    "secp384r1": "1.3.132.0.34",
    "secp256k1": "1.3.132.0.10",
}


def ec_params_for(curve: ec.EllipticCurve) -> bytes:
    return ec_util.encode_named_curve_parameters(CURVE_OIDS[curve.name])


def key_with_leading_x_byte(
    value: int, curve: ec.EllipticCurve | None = None
) -> ec.EllipticCurvePrivateKey:
    """Smallest private scalar whose public X coordinate starts with ``value``."""
    curve = curve or ec.SECP256R1()
    size = (curve.key_size + 7) // 8
    for scalar in itertools.count(1):
        key = ec.derive_private_key(scalar, curve)
        if key.public_key().public_numbers().x.to_bytes(size, "big")[0] == value:
            return key


class FakeSearch:
    """Stands in for python-pkcs11's SearchIter and records the call sequence."""

    def __init__(self, session: "FakeSession", template: dict[Attribute, Any]) -> None:
        self._session = session
        self._active = True
        self._pending = [
            obj
            for obj in session.objects
            if all(obj.attributes.get(key) == value for key, value in template.items())
        ]
        session.calls.append("init")

    def __iter__(self) -> "FakeSearch":
        return self

    def __next__(self) -> "FakeObject":
        self._session.calls.append("fetch")
        if self._session.fail_fetch_after is not None and (
            self._session.calls.count("fetch") > self._session.fail_fetch_after
        ):
            raise pkcs11.exceptions.DeviceError()
        if not self._pending:
            self._finalize()
            raise StopIteration()
        return self._pending.pop(0)

    def _finalize(self) -> None:
        if self._active:
            self._active = False
            self._session.calls.append("final")


class FakeObject:
    def __init__(
        self,
        handle: int,
        attributes: dict[Attribute, Any],
        *,
        sensitive: tuple[Attribute, ...] = (),
        private_key: ec.EllipticCurvePrivateKey | None = None,
        der_signatures: bool = False,
    ) -> None:
        self.handle = handle
        self.attributes = attributes
        self.sensitive = sensitive
        self.read_errors: dict[Attribute, Exception] = {}
        self.private_key = private_key
        self.der_signatures = der_signatures
        self.signed: list[bytes] = []

    def __getitem__(self, key: Attribute) -> Any:
        if key in self.read_errors:
            raise self.read_errors[key]
        if key in self.sensitive:
            raise pkcs11.exceptions.AttributeSensitive()
        if key not in self.attributes:
            raise pkcs11.exceptions.AttributeTypeInvalid()
        return self.attributes[key]

    def sign(self, data: bytes, mechanism: Any = None) -> bytes:
        if self.private_key is None:
            raise pkcs11.exceptions.FunctionFailed()
        self.signed.append(data)
        prehash = {32: hashes.SHA256(), 48: hashes.SHA384(), 64: hashes.SHA512()}[len(data)]
        der = self.private_key.sign(data, ec.ECDSA(utils.Prehashed(prehash)))
        if self.der_signatures:
            return der
        r, s = utils.decode_dss_signature(der)
        size = (self.private_key.curve.key_size + 7) // 8
        return r.to_bytes(size, "big") + s.to_bytes(size, "big")


class FakeSession:
    def __init__(self) -> None:
        self.objects: list[FakeObject] = []
        self.calls: list[str] = []
        self.fail_fetch_after: int | None = None
        self._next_handle = 1

    def get_objects(self, template: dict[Attribute, Any] | None = None) -> FakeSearch:
        return FakeSearch(self, dict(template or {}))

    def add(self, attributes: dict[Attribute, Any], **kwargs: Any) -> FakeObject:
        obj = FakeObject(self._next_handle, attributes, **kwargs)
        self._next_handle += 1
        self.objects.append(obj)
        return obj

    def add_keypair(
        self,
        label: str,
        *,
        curve: ec.EllipticCurve | None = None,
        public_value: str = "spki",
        private_value: bytes | None = None,
        der_signatures: bool = False,
        key: ec.EllipticCurvePrivateKey | None = None,
        wrap_point: bool = True,
    ) -> tuple[FakeObject, FakeObject, ec.EllipticCurvePrivateKey]:
        """
        Add a keypair; ``public_value`` is "spki", "point" or "absent".

        The private CKA_VALUE is sensitive unless ``private_value`` is given.
        """
        if key is None:
            key = ec.generate_private_key(curve or ec.SECP256R1())
        ec_params = ec_params_for(key.curve)
        point = key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.UncompressedPoint,
        )
        private_attributes: dict[Attribute, Any] = {
            Attribute.CLASS: ObjectClass.PRIVATE_KEY,
            Attribute.LABEL: label,
            Attribute.KEY_TYPE: KeyType.EC,
            Attribute.EC_PARAMS: ec_params,
        }
        sensitive: tuple[Attribute, ...] = (Attribute.VALUE,)
        if private_value is not None:
            private_attributes[Attribute.VALUE] = private_value
            sensitive = ()
        private_obj = self.add(
            private_attributes,
            sensitive=sensitive,
            private_key=key,
            der_signatures=der_signatures,
        )

        public_attributes: dict[Attribute, Any] = {
            Attribute.CLASS: ObjectClass.PUBLIC_KEY,
            Attribute.LABEL: label,
            Attribute.KEY_TYPE: KeyType.EC,
            Attribute.EC_PARAMS: ec_params,
            Attribute.EC_POINT: bytes([0x04, len(point)]) + point if wrap_point else point,
        }
        if public_value == "spki":
            public_attributes[Attribute.VALUE] = key.public_key().public_bytes(
                serialization.Encoding.DER,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        elif public_value == "point":
            public_attributes[Attribute.VALUE] = point
        public_obj = self.add(public_attributes)
        return private_obj, public_obj, key


class FakeToken:
    def __init__(self, session: FakeSession, token_label: str = "fake-token") -> None:
        self.session = session
        self.token_label = token_label
        self.opened = False
        self.closed = False

    def __enter__(self) -> "FakeToken":
        self.opened = True
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.closed = True


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def module_path(tmp_path: Path) -> Path:
    path = tmp_path / "libfake-pkcs11.so"
    path.write_bytes(b"")
    return path


@pytest.fixture
def hello_file(tmp_path: Path) -> Path:
    path = tmp_path / "hello.txt"
    path.write_bytes(b"hello world")
    return path


@pytest.fixture
def demo_config(module_path: Path, hello_file: Path) -> SigningDemoConfig:
    return SigningDemoConfig(
        module_path=str(module_path),
        key_label="hsm-go-test-key1",
        input_file=str(hello_file),
    )


@pytest.fixture(autouse=True)
def _isolated_log_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HSM_SIGNING_LOG_FILE", str(tmp_path / "logs" / "hsm-signing.log"))


@pytest.fixture(autouse=True)
def _reset_logger() -> Iterator[None]:
    yield
    logger = logging.getLogger("hsm_signing")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

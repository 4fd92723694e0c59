from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.x509.oid import NameOID

from gate_core.attest import IN_TOTO_PAYLOAD_TYPE, SIGNATURE_PREDICATE, Attestation, pae
from gate_core.attest.keys import FULCIO_ISSUER_V1, FULCIO_ISSUER_V2

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
GITHUB_ISSUER = "https://token.actions.githubusercontent.com"
WORKFLOW_SUBJECT = "https://github.com/acme/myapp/.github/workflows/release.yaml@refs/heads/main"
DIGEST = "sha256:" + ("ab" * 32)
OTHER_DIGEST = "sha256:" + ("cd" * 32)


class MutableClock:
    def __init__(self, start: datetime) -> None:
        self.value = start

    def __call__(self) -> datetime:
        return self.value

    def advance(self, delta: timedelta) -> None:
        self.value = self.value + delta


def statement(digest: str, predicate_type: str = SIGNATURE_PREDICATE) -> bytes:
    return json.dumps(
        {
            "_type": "https://in-toto.io/Statement/v1",
            "subject": [{"name": "harbor.example.com/myapp", "digest": {"sha256": digest.split(":", 1)[1]}}],
            "predicateType": predicate_type,
            "predicate": {},
        },
        sort_keys=True,
    ).encode("utf-8")


def public_pem(key) -> str:
    return key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")


def cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def envelope(payload: bytes, signature: bytes, payload_type: str = IN_TOTO_PAYLOAD_TYPE, keyid: str = "") -> dict:
    return {
        "payloadType": payload_type,
        "payload": base64.b64encode(payload).decode("ascii"),
        "signatures": [{"keyid": keyid, "sig": base64.b64encode(signature).decode("ascii")}],
    }


class TrustRoot:
    """Self-signed CA issuing short-lived Fulcio-style signing certificates."""

    def __init__(self, common_name: str = "test-fulcio-root") -> None:
        self.key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        self.cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(self.key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(NOW - timedelta(days=365))
            .not_valid_after(NOW + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.key, hashes.SHA256())
        )

    def issue(
        self,
        subject: str = WORKFLOW_SUBJECT,
        issuer: str = GITHUB_ISSUER,
        *,
        not_before: datetime = NOW - timedelta(days=1),
        not_after: datetime = NOW + timedelta(days=1),
        v2_issuer: bool = False,
    ) -> tuple[ec.EllipticCurvePrivateKey, x509.Certificate]:
        leaf_key = ec.generate_private_key(ec.SECP256R1())
        if v2_issuer:
            raw = issuer.encode("utf-8")
            issuer_ext = x509.UnrecognizedExtension(FULCIO_ISSUER_V2, bytes([0x0C, len(raw)]) + raw)
        else:
            issuer_ext = x509.UnrecognizedExtension(FULCIO_ISSUER_V1, issuer.encode("utf-8"))
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([]))
            .issuer_name(self.cert.subject)
            .public_key(leaf_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.UniformResourceIdentifier(subject)]), critical=True)
            .add_extension(issuer_ext, critical=False)
            .sign(self.key, hashes.SHA256())
        )
        return leaf_key, cert


class AttestationFactory:
    def __init__(self, root: TrustRoot) -> None:
        self.root = root

    def keyless(
        self,
        digest: str = DIGEST,
        *,
        subject: str = WORKFLOW_SUBJECT,
        issuer: str = GITHUB_ISSUER,
        predicate_type: str = SIGNATURE_PREDICATE,
        signed_at: datetime | None = NOW - timedelta(hours=1),
        root: TrustRoot | None = None,
        tamper: bool = False,
    ) -> Attestation:
        leaf_key, cert = (root or self.root).issue(subject, issuer)
        payload = statement(digest, predicate_type)
        signature = leaf_key.sign(pae(IN_TOTO_PAYLOAD_TYPE, payload), ec.ECDSA(hashes.SHA256()))
        if tamper:
            payload = statement(digest, predicate_type).replace(b"myapp", b"other")
        return Attestation(
            digest=digest,
            predicate_type=predicate_type,
            payload=payload,
            signature=signature,
            certificate=cert,
            signed_at=signed_at,
        )

    def keyed(
        self,
        private_key: ed25519.Ed25519PrivateKey,
        digest: str = DIGEST,
        *,
        predicate_type: str = SIGNATURE_PREDICATE,
        key_id: str | None = None,
    ) -> Attestation:
        payload = statement(digest, predicate_type)
        return Attestation(
            digest=digest,
            predicate_type=predicate_type,
            payload=payload,
            signature=private_key.sign(pae(IN_TOTO_PAYLOAD_TYPE, payload)),
            key_id=key_id,
            signed_at=NOW - timedelta(hours=1),
        )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(NOW)


@pytest.fixture(scope="session")
def trust_root() -> TrustRoot:
    return TrustRoot()


@pytest.fixture(scope="session")
def factory(trust_root: TrustRoot) -> AttestationFactory:
    return AttestationFactory(trust_root)

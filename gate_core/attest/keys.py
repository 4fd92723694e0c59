"""Public key, certificate and signature primitives."""

from __future__ import annotations

import hashlib
from datetime import datetime

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes
from cryptography.x509.oid import NameOID

from ..errors import ValidationError

# Fulcio certificate extensions carrying the OIDC issuer.
FULCIO_ISSUER_V1 = x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.1")
FULCIO_ISSUER_V2 = x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.8")


def load_public_key(pem: str) -> PublicKeyTypes:
    try:
        return serialization.load_pem_public_key(pem.encode("utf-8"))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise ValidationError("public key is not valid PEM") from exc


def key_fingerprint(key: PublicKeyTypes) -> str:
    der = key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return f"sha256:{hashlib.sha256(der).hexdigest()}"


def verify_signature(key: PublicKeyTypes, signature: bytes, data: bytes) -> None:
    """Raise ``ValidationError`` unless ``signature`` is valid for ``data``."""

    try:
        if isinstance(key, ed25519.Ed25519PublicKey):
            key.verify(signature, data)
        elif isinstance(key, ec.EllipticCurvePublicKey):
            algorithm = hashes.SHA384() if key.curve.key_size >= 384 else hashes.SHA256()
            key.verify(signature, data, ec.ECDSA(algorithm))
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        else:
            raise ValidationError(f"unsupported key type: {type(key).__name__}")
    except InvalidSignature as exc:
        raise ValidationError("signature mismatch") from exc


def verify_issued_by(cert: x509.Certificate, roots: list[x509.Certificate]) -> x509.Certificate:
    for root in roots:
        try:
            cert.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature):
            continue
        return root
    raise ValidationError("certificate is not issued by a trusted root")


def verify_validity(cert: x509.Certificate, at: datetime) -> None:
    if at < cert.not_valid_before_utc or at > cert.not_valid_after_utc:
        raise ValidationError("certificate was not valid at signing time")


def certificate_identity(cert: x509.Certificate) -> tuple[list[str], str | None]:
    """Return the SAN subjects and the OIDC issuer recorded in a signing certificate."""

    subjects: list[str] = []
    try:
        sans = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        sans = None
    if sans is not None:
        subjects.extend(sans.get_values_for_type(x509.UniformResourceIdentifier))
        subjects.extend(sans.get_values_for_type(x509.RFC822Name))
    for attr in cert.subject.get_attributes_for_oid(NameOID.EMAIL_ADDRESS):
        value = str(attr.value)
        if value and value not in subjects:
            subjects.append(value)
    return subjects, _certificate_issuer(cert)


def _certificate_issuer(cert: x509.Certificate) -> str | None:
    for oid in (FULCIO_ISSUER_V2, FULCIO_ISSUER_V1):
        try:
            ext = cert.extensions.get_extension_for_oid(oid).value
        except x509.ExtensionNotFound:
            continue
        raw = getattr(ext, "value", b"")
        if oid == FULCIO_ISSUER_V1:
            try:
                return raw.decode("utf-8")
            except UnicodeDecodeError:
                continue
        decoded = _decode_der_utf8(raw)
        if decoded:
            return decoded
    return None


def _decode_der_utf8(raw: bytes) -> str | None:
    if len(raw) < 2 or raw[0] != 0x0C:
        return None
    length = raw[1]
    idx = 2
    if length & 0x80:
        n = length & 0x7F
        if n == 0 or len(raw) < 2 + n:
            return None
        length = int.from_bytes(raw[idx : idx + n], "big")
        idx += n
    if len(raw) < idx + length:
        return None
    try:
        return raw[idx : idx + length].decode("utf-8")
    except UnicodeDecodeError:
        return None

"""Key, CSR and certificate helpers."""

import os
from datetime import datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from fairydust._logging import get_logger

logger = get_logger(__name__)

# Type alias for private keys
PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Args:
        key_size: Key size in bits (2048 or 4096 recommended).
    """
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def generate_ecdsa_key(curve: str = "P-256") -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA private key.

    Args:
        curve: Curve name ("P-256" or "P-384").

    Raises:
        ValueError: If curve is not supported.
    """
    curves = {
        "P-256": ec.SECP256R1(),
        "P-384": ec.SECP384R1(),
    }
    if curve not in curves:
        raise ValueError(f"Unsupported curve: {curve}. Supported: {list(curves.keys())}")

    return ec.generate_private_key(curves[curve])


KEY_TYPES = ("rsa2048", "rsa4096", "ec256", "ec384")


def generate_key(key_type: str) -> PrivateKey:
    """Generate a certificate key of one of KEY_TYPES.

    Raises:
        ValueError: If key_type is not supported.
    """
    if key_type == "rsa2048":
        return generate_rsa_key(2048)
    if key_type == "rsa4096":
        return generate_rsa_key(4096)
    if key_type == "ec256":
        return generate_ecdsa_key("P-256")
    if key_type == "ec384":
        return generate_ecdsa_key("P-384")
    raise ValueError(f"Unsupported key type: {key_type}. Supported: {list(KEY_TYPES)}")


def load_private_key_pem(pem_data: str, password: bytes | None = None) -> PrivateKey:
    """Load a private key from PEM-encoded data.

    Raises:
        ValueError: If PEM data is invalid or the key type is unsupported.
    """
    try:
        key = serialization.load_pem_private_key(pem_data.encode("utf-8"), password=password)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid PEM private key: {e}") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ValueError(f"Unsupported key type: {type(key).__name__}")

    return key


def private_key_to_pem(key: PrivateKey) -> str:
    """Serialize a private key as unencrypted PKCS#8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_or_create_account_key(path: Path) -> PrivateKey:
    """Load the ACME account key, generating one on first use.

    A new key is written with mode 0600.
    """
    if path.exists():
        return load_private_key_pem(path.read_text())

    key = generate_rsa_key(2048)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(private_key_to_pem(key))
    logger.info("Generated new account key", extra={"path": str(path)})
    return key


def create_csr(key: PrivateKey, domains: list[str]) -> x509.CertificateSigningRequest:
    """Create a Certificate Signing Request (CSR).

    The first domain becomes the Common Name; all domains go into the
    Subject Alternative Name extension.

    Raises:
        ValueError: If domains list is empty.
    """
    if not domains:
        raise ValueError("At least one domain is required")

    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    san = x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains])

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(san, critical=False)
    )
    return builder.sign(key, hashes.SHA256())


def certificate_validity(certificate_pem: str) -> tuple[datetime, datetime]:
    """Return (not_before, not_after) of the leaf certificate in a PEM chain.

    Raises:
        ValueError: If the PEM data holds no certificate.
    """
    cert = x509.load_pem_x509_certificate(certificate_pem.encode())
    return cert.not_valid_before_utc, cert.not_valid_after_utc

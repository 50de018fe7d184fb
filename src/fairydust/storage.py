"""Persistence of issued certificates and their metadata."""

import os
from abc import ABC, abstractmethod
from pathlib import Path

from fairydust._logging import get_logger
from fairydust.exceptions import PermanentError
from fairydust.models import Certificate, CertificateMetadata

logger = get_logger(__name__)

FULLCHAIN_FILE = "fullchain.pem"
PRIVKEY_FILE = "privkey.pem"
METADATA_FILE = "metadata.json"


class CertificateStore(ABC):
    """Where issued certificates live between runs."""

    @abstractmethod
    def save(self, certificate: Certificate) -> CertificateMetadata:
        """Persist certificate, superseding any earlier one for its domain set."""
        ...

    @abstractmethod
    def load(self, domain_set_id: str) -> Certificate:
        """Load the current certificate for a domain set.

        Raises:
            PermanentError: If nothing is stored under domain_set_id.
        """
        ...

    @abstractmethod
    def list_metadata(self) -> list[CertificateMetadata]:
        """Metadata of every stored certificate."""
        ...

    @abstractmethod
    def mark_revoked(self, domain_set_id: str) -> None:
        """Flag a certificate as revoked so it is no longer renewed."""
        ...


class FileCertificateStore(CertificateStore):
    """One directory per domain set holding PEM files and metadata.json.

    Args:
        directory: Root directory; created on first save.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def _path(self, domain_set_id: str) -> Path:
        return self.directory / domain_set_id

    @staticmethod
    def _write(path: Path, content: str, mode: int = 0o644) -> None:
        tmp = path.with_name(path.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.replace(tmp, path)

    def save(self, certificate: Certificate) -> CertificateMetadata:
        path = self._path(certificate.domain_set_id)
        path.mkdir(parents=True, exist_ok=True)

        self._write(path / FULLCHAIN_FILE, certificate.certificate_pem)
        if certificate.private_key_pem is not None:
            self._write(path / PRIVKEY_FILE, certificate.private_key_pem, mode=0o600)

        metadata = CertificateMetadata(
            domain_set_id=certificate.domain_set_id,
            domains=certificate.domains,
            issued_at=certificate.issued_at,
            expires_at=certificate.expires_at,
            location=str(path),
        )
        self._write(path / METADATA_FILE, metadata.model_dump_json(indent=2))
        logger.info(
            "Certificate stored",
            extra={"domain_set_id": metadata.domain_set_id, "location": metadata.location},
        )
        return metadata

    def _load_metadata(self, domain_set_id: str) -> CertificateMetadata:
        path = self._path(domain_set_id) / METADATA_FILE
        if not path.exists():
            raise PermanentError(f"No certificate stored for {domain_set_id}")
        return CertificateMetadata.model_validate_json(path.read_text())

    def load(self, domain_set_id: str) -> Certificate:
        metadata = self._load_metadata(domain_set_id)
        path = self._path(domain_set_id)
        key_path = path / PRIVKEY_FILE
        return Certificate(
            domains=metadata.domains,
            issued_at=metadata.issued_at,
            expires_at=metadata.expires_at,
            certificate_pem=(path / FULLCHAIN_FILE).read_text(),
            private_key_pem=key_path.read_text() if key_path.exists() else None,
            request_id=metadata.domain_set_id,
        )

    def list_metadata(self) -> list[CertificateMetadata]:
        if not self.directory.exists():
            return []
        result = []
        for path in sorted(self.directory.glob(f"*/{METADATA_FILE}")):
            try:
                result.append(CertificateMetadata.model_validate_json(path.read_text()))
            except ValueError:
                logger.warning("Skipping unreadable metadata", extra={"path": str(path)})
        return result

    def mark_revoked(self, domain_set_id: str) -> None:
        metadata = self._load_metadata(domain_set_id)
        updated = metadata.model_copy(update={"revoked": True})
        self._write(self._path(domain_set_id) / METADATA_FILE, updated.model_dump_json(indent=2))

"""Durable storage for the platform session cookie."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import CredentialStoreError
from .integrations import SessionCredential

logger = logging.getLogger(__name__)


class CredentialRecord(BaseModel):
    """On-disk JSON shape: ``{"cookie": "..."}``."""

    model_config = ConfigDict(extra="ignore")

    cookie: str = ""


class CredentialStore:
    """Read and write a single session credential at a fixed path."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> SessionCredential | None:
        """Return the stored credential, or ``None`` when nothing was saved yet."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No stored credential at %s", self.path)
            return None
        except OSError as exc:
            raise CredentialStoreError(f"cannot read credential store {self.path}: {exc}") from exc
        try:
            record = CredentialRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise CredentialStoreError(f"corrupted credential store {self.path}") from exc
        return SessionCredential(record.cookie)

    def save(self, credential: SessionCredential) -> None:
        record = CredentialRecord(cookie=credential.token)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(record.model_dump_json(), encoding="utf-8")
        except OSError as exc:
            raise CredentialStoreError(f"cannot write credential store {self.path}: {exc}") from exc
        logger.info("Persisted session credential to %s (authenticated=%s)", self.path, credential.is_authenticated)

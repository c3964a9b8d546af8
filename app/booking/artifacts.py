from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from flask import Flask, current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from app.booking.errors import DeliveryFailure, ValidationError
from app.core.models import utcnow

logger = logging.getLogger(__name__)

EXTENSION_KEY = "booking_artifacts"


@dataclass
class ProofUpload:
    data: bytes
    filename: str
    content_type: str = "application/octet-stream"


class ArtifactStore(ABC):
    @abstractmethod
    def store(self, data: bytes, filename: str) -> str:
        """Persist ``data`` and return an opaque artifact reference."""

    @abstractmethod
    def delete(self, artifact_ref: str) -> bool:
        """Remove an artifact; returns False when it did not exist."""

    @abstractmethod
    def path_for(self, artifact_ref: str) -> Path:
        pass


class LocalArtifactStore(ArtifactStore):
    def __init__(self, root: Path):
        self.root = Path(root)

    def store(self, data: bytes, filename: str) -> str:
        safe_name = secure_filename(filename) or "proof.bin"
        now = utcnow()
        relative = Path(f"{now:%Y}") / f"{now:%m}" / f"{uuid4().hex}-{safe_name}"
        absolute = self.root / relative
        absolute.parent.mkdir(parents=True, exist_ok=True)
        absolute.write_bytes(data)
        return relative.as_posix()

    def delete(self, artifact_ref: str) -> bool:
        absolute = self.path_for(artifact_ref)
        if not absolute.exists():
            return False
        absolute.unlink()
        return True

    def path_for(self, artifact_ref: str) -> Path:
        root = self.root.resolve()
        absolute = (root / artifact_ref).resolve()
        if root not in absolute.parents:
            raise ValueError(f"Artifact reference escapes the store: {artifact_ref}")
        return absolute


def init_artifact_store(app: Flask) -> None:
    root = Path(app.config.get("PROOF_STORAGE_DIR") or "storage/proofs")
    if not root.is_absolute():
        root = Path(app.instance_path) / root
    app.extensions[EXTENSION_KEY] = LocalArtifactStore(root)


def get_artifact_store() -> ArtifactStore:
    return current_app.extensions[EXTENSION_KEY]


def read_proof_upload(file_obj: FileStorage | ProofUpload | None) -> ProofUpload:
    if isinstance(file_obj, ProofUpload):
        upload = file_obj
    else:
        if not file_obj or not file_obj.filename:
            raise ValidationError("A proof of payment file is required")
        upload = ProofUpload(
            data=file_obj.read(),
            filename=file_obj.filename,
            content_type=file_obj.mimetype or "application/octet-stream",
        )

    extension = upload.filename.rsplit(".", 1)[-1].lower() if "." in upload.filename else ""
    allowed = current_app.config.get("ALLOWED_PROOF_EXTENSIONS", set())
    if extension not in allowed:
        raise ValidationError(f"Proof must be one of: {', '.join(sorted(allowed))}")
    if not upload.data:
        raise ValidationError("Proof of payment file is empty")
    max_bytes = int(current_app.config.get("MAX_PROOF_BYTES", 0))
    if max_bytes and len(upload.data) > max_bytes:
        raise ValidationError(f"Proof of payment exceeds {max_bytes // (1024 * 1024)} MB")
    return upload


def store_proof(upload: ProofUpload) -> str:
    try:
        return get_artifact_store().store(upload.data, upload.filename)
    except OSError as exc:
        logger.error("Could not store proof %s", upload.filename, exc_info=True)
        raise DeliveryFailure("Proof of payment could not be stored") from exc


def discard_artifact(artifact_ref: str | None) -> None:
    if not artifact_ref:
        return
    try:
        get_artifact_store().delete(artifact_ref)
    except (OSError, ValueError):
        logger.warning("Could not delete artifact %s", artifact_ref, exc_info=True)

"""Local file storage for signatures and UAT documents."""
import base64
import binascii
import logging
import re
import uuid
from pathlib import Path
from typing import Protocol

from .errors import ValidationError
from .models import AttachmentType

logger = logging.getLogger("itsm-core.blob_store")

MB = 1024 * 1024

SIGNATURE_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png"})
SIGNATURE_MAX_BYTES = 2 * MB

DOCUMENT_MIME_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "text/plain",
    "application/zip",
})
DOCUMENT_MAX_BYTES = 10 * MB

SUBFOLDERS = {
    AttachmentType.SIGNATURE: "signatures",
    AttachmentType.UAT_DOCUMENTATION: "uat-documents",
}

BASE64_SIGNATURE_PATTERN = re.compile(r"^data:image/(png|jpeg|jpg);base64,(.+)$", re.DOTALL)


class BlobStore(Protocol):
    """Storage collaborator used by the attachment workflow."""

    def validate(self, mime_type: str, size: int, kind: AttachmentType) -> None:
        ...

    def save(self, data: bytes, kind: AttachmentType, filename: str) -> str:
        ...

    def delete(self, relative_path: str) -> None:
        ...


def validate_upload(mime_type: str, size: int, kind: AttachmentType) -> None:
    """
    Check MIME type and size limits for an upload.

    Raises:
        ValidationError: Type not allowed for `kind`, or file too large
    """
    if kind == AttachmentType.SIGNATURE:
        if mime_type not in SIGNATURE_MIME_TYPES:
            raise ValidationError("Invalid signature file type. Only JPG and PNG files are allowed.")
        if size > SIGNATURE_MAX_BYTES:
            raise ValidationError("Signature file size must not exceed 2MB")
        return

    if mime_type not in DOCUMENT_MIME_TYPES:
        raise ValidationError(
            "Invalid document file type. Allowed types: PDF, DOC, DOCX, XLS, XLSX, JPG, PNG, TXT, ZIP"
        )
    if size > DOCUMENT_MAX_BYTES:
        raise ValidationError("Document file size must not exceed 10MB")


class LocalBlobStore:
    """
    Stores uploads on the local filesystem.

    Files land in `<upload_dir>/signatures/` or `<upload_dir>/uat-documents/`
    under a random name; the returned path is relative to `upload_dir`
    (e.g. ``/signatures/3f2a....png``) and is what gets persisted.
    """

    def __init__(self, upload_dir: str):
        self.root = Path(upload_dir)
        for subfolder in SUBFOLDERS.values():
            (self.root / subfolder).mkdir(parents=True, exist_ok=True)

    def validate(self, mime_type: str, size: int, kind: AttachmentType) -> None:
        validate_upload(mime_type, size, kind)

    def save(self, data: bytes, kind: AttachmentType, filename: str) -> str:
        subfolder = SUBFOLDERS[kind]
        unique_name = f"{uuid.uuid4()}{Path(filename).suffix}"
        (self.root / subfolder / unique_name).write_bytes(data)
        logger.info(f"Stored {kind.value} upload {filename!r} as /{subfolder}/{unique_name} ({len(data)} bytes)")
        return f"/{subfolder}/{unique_name}"

    def save_base64_signature(self, data_url: str) -> str:
        """Store a ``data:image/...;base64,`` signature captured in the browser."""
        match = BASE64_SIGNATURE_PATTERN.match(data_url.strip())
        if not match:
            raise ValidationError("Invalid base64 signature format")
        extension, payload = match.groups()
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("Invalid base64 signature format")
        validate_upload(f"image/{extension}", len(data), AttachmentType.SIGNATURE)
        return self.save(data, AttachmentType.SIGNATURE, f"signature.{extension}")

    def resolve(self, relative_path: str) -> Path:
        """Absolute location of a stored file."""
        return self.root / relative_path.lstrip("/")

    def delete(self, relative_path: str) -> None:
        path = self.resolve(relative_path)
        if path.exists():
            path.unlink()
            logger.info(f"Deleted stored file {relative_path}")

import re
from dataclasses import dataclass
from urllib.parse import unquote

from sqlalchemy.orm import Session

from labben.config import settings
from labben.models.document import Document


class InvalidFilePathError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class DocumentMeta:
    document_id: str
    file_path: str  # bare storage key
    file_name: str


def normalize_storage_path(file_path: str, bucket: str) -> str:
    """
    Turn a stored ``file_path`` into a bucket-relative storage key.

    Accepts either a bare key (``blog-images/doc-123.pdf``) or a full storage
    URL containing ``/<bucket>/`` (``https://x.supabase.co/storage/v1/object/public/customer_docs/a/b.pdf``).
    Raises InvalidFilePathError for anything else.
    """
    if not file_path or not file_path.strip():
        raise InvalidFilePathError("Empty file path")

    value = file_path.strip()

    if re.match(r"^https?://", value, re.IGNORECASE):
        match = re.search(rf"/{re.escape(bucket)}/(.+?)(?:[?#]|$)", value)
        if not match:
            raise InvalidFilePathError(f"URL does not reference bucket {bucket!r}")
        return unquote(match.group(1))

    if "://" in value:
        raise InvalidFilePathError("Unsupported URL scheme in file path")

    key = value.lstrip("/")
    if not key:
        raise InvalidFilePathError("Empty file path")
    return key


def get_document(db: Session, document_id: str) -> Document | None:
    return db.get(Document, document_id)


def get_document_meta(db: Session, document_id: str, bucket: str | None = None) -> DocumentMeta | None:
    """
    Resolve a document to its storage key and display name.

    Returns None if the row is gone. Raises InvalidFilePathError if the stored
    path cannot be mapped onto the bucket.
    """
    document = get_document(db, document_id)
    if document is None:
        return None

    return DocumentMeta(
        document_id=document.id,
        file_path=normalize_storage_path(document.file_path, bucket or settings.storage_bucket),
        file_name=document.file_name or "document",
    )

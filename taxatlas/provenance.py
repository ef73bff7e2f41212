"""Content-addressed source documents.

Every fact row references a SourceDoc identified by (url, sha256 of the exact
bytes read). Re-reading unchanged bytes resolves to the same row; changed bytes
at the same url create a new one.
"""

import hashlib
import json
import logging
import re
import uuid
from datetime import date, datetime, timezone
from pathlib import Path

from sqlalchemy.orm import Session

from .exceptions import MalformedInputError
from .ids import stable_uuid
from .models import SourceDoc
from .schemas import SourceReference

logger = logging.getLogger(__name__)

SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
REPO_URL_SCHEME = "taxatlas://repo/"
PIPELINE_URL_SCHEME = "taxatlas://pipeline/"

_CHUNK_SIZE = 1024 * 1024


def sha256_hex_from_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_hex_from_text(text: str) -> str:
    return sha256_hex_from_bytes(text.encode("utf-8"))


def sha256_hex_from_file(path: Path) -> str:
    """Stream a file through sha256 without loading it whole."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def canonical_json(value) -> str:
    """Stable JSON text: sorted keys, 2-space indent."""
    return json.dumps(value, sort_keys=True, indent=2, default=str)


def repo_file_url(path: Path, root: Path | None = None) -> str:
    """Synthetic url for a file shipped with the project (pilot stubs)."""
    path = Path(path)
    if root is not None:
        try:
            path = path.resolve().relative_to(Path(root).resolve())
        except ValueError:
            pass
    return REPO_URL_SCHEME + path.as_posix().lstrip("/")


def pipeline_url(name: str) -> str:
    return PIPELINE_URL_SCHEME + name


def upsert_source_doc(
    session: Session,
    url: str,
    content_sha256: str,
    *,
    is_demo: bool = False,
    title: str | None = None,
    mime_type: str | None = None,
    published_at: date | None = None,
    retrieved_at: datetime | None = None,
    notes: str | None = None,
) -> uuid.UUID:
    """Register (or find) the source document for these exact bytes.

    Existing rows only get metadata filled where it is still null. is_demo is
    fixed when the row is created.
    """
    if not url:
        raise MalformedInputError("Source document url is required")
    content_sha256 = (content_sha256 or "").lower()
    if not SHA256_RE.match(content_sha256):
        raise MalformedInputError(f"Invalid sha256 for {url}: {content_sha256!r}")

    existing = (
        session.query(SourceDoc)
        .filter(SourceDoc.url == url, SourceDoc.content_sha256 == content_sha256)
        .first()
    )

    if existing:
        if existing.title is None and title is not None:
            existing.title = title
        if existing.mime_type is None and mime_type is not None:
            existing.mime_type = mime_type
        if existing.published_at is None and published_at is not None:
            existing.published_at = published_at
        if existing.retrieved_at is None and retrieved_at is not None:
            existing.retrieved_at = retrieved_at
        if existing.notes is None and notes is not None:
            existing.notes = notes
        return existing.id

    doc = SourceDoc(
        id=stable_uuid(["source_doc", url, content_sha256]),
        url=url,
        content_sha256=content_sha256,
        is_demo=is_demo,
        title=title,
        mime_type=mime_type,
        published_at=published_at,
        retrieved_at=retrieved_at or datetime.now(timezone.utc),
        notes=notes,
    )
    session.add(doc)
    session.flush()
    logger.debug("Registered source doc %s (%s)", url, content_sha256[:12])
    return doc.id


def upsert_source_doc_from_file(
    session: Session,
    path: Path,
    *,
    url: str | None = None,
    root: Path | None = None,
    **metadata,
) -> tuple[uuid.UUID, str]:
    """Hash a local file and register it. Returns (source_doc_id, sha256)."""
    path = Path(path)
    if not path.is_file():
        raise MalformedInputError(f"Input file not found: {path}")
    sha = sha256_hex_from_file(path)
    doc_id = upsert_source_doc(session, url or repo_file_url(path, root), sha, **metadata)
    return doc_id, sha


def upsert_source_doc_from_text(
    session: Session, url: str, text: str, **metadata
) -> tuple[uuid.UUID, str]:
    sha = sha256_hex_from_text(text)
    return upsert_source_doc(session, url, sha, **metadata), sha


def upsert_source_doc_from_json(
    session: Session, url: str, value, **metadata
) -> tuple[uuid.UUID, str]:
    """Register a synthetic document whose content is a canonical JSON value."""
    return upsert_source_doc_from_text(session, url, canonical_json(value), **metadata)


def source_reference(doc: SourceDoc) -> SourceReference:
    return SourceReference(
        source_id=doc.id,
        url=doc.url,
        title=doc.title,
        retrieved_at=doc.retrieved_at,
        published_at=doc.published_at,
        is_demo=doc.is_demo,
    )

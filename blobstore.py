import logging
from typing import Protocol

from clock import utcnow
from crypto import sha256_hex
from db import SessionLocal
from errors import NotFound
from models import Blob

logger = logging.getLogger("ehr.blobstore")


class BlobStore(Protocol):
    """Content-addressed document storage supplied by the host application."""

    def put(self, data: bytes) -> str: ...

    def get(self, content_hash: str) -> bytes: ...


class SqlBlobStore:
    """
    Default BlobStore: bytes kept in the ``blobs`` table under their SHA-256.
    Putting the same bytes twice is a no-op that returns the same hash.
    """

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def put(self, data: bytes) -> str:
        content_hash = sha256_hex(data)
        with self._session_factory() as db:
            if db.get(Blob, content_hash) is None:
                db.add(Blob(content_hash=content_hash, data=data, size=len(data), stored_at=utcnow()))
                db.commit()
                logger.info("stored blob %s (%d bytes)", content_hash, len(data))
        return content_hash

    def get(self, content_hash: str) -> bytes:
        with self._session_factory() as db:
            blob = db.get(Blob, content_hash)
            if blob is None:
                raise NotFound(f"blob {content_hash} not found", field="content_hash")
            return blob.data

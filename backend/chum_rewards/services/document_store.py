"""
Durable key/value document store.

Two backends share one async interface:
- SqlDocumentStore: JSON documents in a SQLAlchemy table (default)
- FirebaseDocumentStore: Firebase Realtime Database REST API (FIREBASE_DB_URL)

Keys are slash-separated paths. Semantics are those of a remote document
store: last write wins, no transactions.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from chum_rewards.config import get_settings
from chum_rewards.database import SessionLocal, get_engine
from chum_rewards.errors import StorageError
from chum_rewards.models import Document

logger = logging.getLogger(__name__)


def split_key(key: str):
    """Split "players/abc" into ("players", "abc")."""
    if "/" not in key:
        return "", key
    collection, name = key.rsplit("/", 1)
    return collection, name


class DocumentStore:
    """Interface for the durable ledger storage."""

    async def load(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def save(self, key: str, data: Any) -> None:
        raise NotImplementedError

    async def load_collection(self, prefix: str) -> Dict[str, Any]:
        """Return {child name: document} for every document directly under prefix."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class SqlDocumentStore(DocumentStore):
    """
    Document store backed by the documents table.

    Session work is blocking, so each call runs in a worker thread.
    """

    def __init__(self, session_factory=None):
        if session_factory is None:
            get_engine()
            session_factory = SessionLocal
        self.session_factory = session_factory

    def _load_sync(self, key: str) -> Optional[Any]:
        db = self.session_factory()
        try:
            document = db.get(Document, key)
            return document.data if document is not None else None
        finally:
            db.close()

    def _save_sync(self, key: str, data: Any) -> None:
        db = self.session_factory()
        try:
            document = db.get(Document, key)
            if document is None:
                collection, _ = split_key(key)
                document = Document(key=key, collection=collection, data=data)
                db.add(document)
            else:
                document.data = data
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _load_collection_sync(self, prefix: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            documents = db.query(Document).filter(
                Document.collection == prefix.strip("/")
            ).order_by(Document.key.asc()).all()
            return {split_key(d.key)[1]: d.data for d in documents}
        finally:
            db.close()

    async def load(self, key: str) -> Optional[Any]:
        try:
            return await asyncio.to_thread(self._load_sync, key)
        except SQLAlchemyError as e:
            logger.error(f"Document load failed for {key}: {e}")
            raise StorageError(f"Document store unavailable while reading {key}") from e

    async def save(self, key: str, data: Any) -> None:
        await asyncio.to_thread(self._save_sync, key, data)

    async def load_collection(self, prefix: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self._load_collection_sync, prefix)


class FirebaseDocumentStore(DocumentStore):
    """
    Firebase Realtime Database over its REST API.

    Documents live under <db_url>/p2e/<key>.json. Firebase may return
    arrays as index-keyed objects; callers normalize on load.
    """

    def __init__(self, db_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.db_url = db_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    def _url(self, key: str) -> str:
        return f"{self.db_url}/p2e/{key.strip('/')}.json"

    async def load(self, key: str) -> Optional[Any]:
        """
        Read a document.

        Returns:
            The document, or None when it does not exist (404 or null)

        Raises:
            StorageError: transport failure or any other error status
        """
        try:
            response = await self.client.get(self._url(key))
        except httpx.HTTPError as e:
            logger.error(f"Firebase load error ({key}): {e}")
            raise StorageError(f"Document store unreachable while reading {key}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.error(f"Firebase load {key} returned {response.status_code}")
            raise StorageError(
                f"Document store answered {response.status_code} while reading {key}",
                storeStatus=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise StorageError(f"Document store returned a malformed body for {key}") from e

    async def save(self, key: str, data: Any) -> None:
        try:
            response = await self.client.put(self._url(key), json=data)
        except httpx.HTTPError as e:
            raise StorageError(f"Document store unreachable while writing {key}") from e
        if response.status_code >= 400:
            raise StorageError(
                f"Firebase save error ({key}): {response.status_code} {response.text}",
                storeStatus=response.status_code
            )

    async def load_collection(self, prefix: str) -> Dict[str, Any]:
        data = await self.load(prefix)
        if not isinstance(data, dict):
            return {}
        return {name: value for name, value in data.items() if value is not None}

    async def close(self) -> None:
        await self.client.aclose()


#global document store instance
_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """
    Get or create the global document store.

    Returns:
        FirebaseDocumentStore when FIREBASE_DB_URL is set, else SqlDocumentStore
    """
    global _document_store

    if _document_store is None:
        settings = get_settings()
        if settings.firebase_db_url:
            logger.info(f"Using Firebase document store: {settings.firebase_db_url}")
            _document_store = FirebaseDocumentStore(
                settings.firebase_db_url,
                timeout=settings.http_timeout_seconds
            )
        else:
            _document_store = SqlDocumentStore()

    return _document_store

"""Key/document persistence used by the planning engine.

Documents are plain JSON-compatible dicts identified by ``_id`` inside a named
collection. Filters are equality matches on top-level fields.
"""
from __future__ import annotations

import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from azuka.exceptions import PersistenceFailure
from azuka.models.database_models import Document


logger = logging.getLogger(__name__)

USERS = "users"
DAILY_LOGS = "daily_logs"
WEEKLY_PLANS = "weekly_plans"

Filter = dict[str, Any]


class DocumentStore(Protocol):
    def find_one(self, collection: str, filter: Filter) -> dict[str, Any] | None: ...

    def find(self, collection: str, filter: Filter | None = None) -> list[dict[str, Any]]: ...

    def find_one_and_update(
        self,
        collection: str,
        filter: Filter,
        update: dict[str, Any],
        upsert: bool = False,
    ) -> dict[str, Any] | None: ...

    def insert(self, collection: str, document: dict[str, Any]) -> dict[str, Any]: ...

    def update_many(self, collection: str, filter: Filter, update: dict[str, Any]) -> int: ...


def matches(document: dict[str, Any], filter: Filter | None) -> bool:
    if not filter:
        return True
    return all(document.get(field) == value for field, value in filter.items())


def new_document_id() -> str:
    return uuid.uuid4().hex


def _upserted(filter: Filter, update: dict[str, Any]) -> dict[str, Any]:
    document = {**filter, **update}
    document.setdefault("_id", new_document_id())
    return document


class InMemoryDocumentStore:
    """Dict-backed store for tests and local development."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def find_one(self, collection, filter):
        with self._lock:
            for document in self._collection(collection).values():
                if matches(document, filter):
                    return copy.deepcopy(document)
        return None

    def find(self, collection, filter=None):
        with self._lock:
            return [
                copy.deepcopy(document)
                for document in self._collection(collection).values()
                if matches(document, filter)
            ]

    def find_one_and_update(self, collection, filter, update, upsert=False):
        with self._lock:
            documents = self._collection(collection)
            for key, document in documents.items():
                if matches(document, filter):
                    documents[key] = {**document, **copy.deepcopy(update), "_id": key}
                    return copy.deepcopy(documents[key])
            if not upsert:
                return None
            document = _upserted(filter, copy.deepcopy(update))
            documents[document["_id"]] = document
            return copy.deepcopy(document)

    def insert(self, collection, document):
        document = copy.deepcopy(document)
        document.setdefault("_id", new_document_id())
        with self._lock:
            documents = self._collection(collection)
            if document["_id"] in documents:
                raise PersistenceFailure(f"Duplicate key {document['_id']} in {collection}")
            documents[document["_id"]] = document
        return copy.deepcopy(document)

    def update_many(self, collection, filter, update):
        count = 0
        with self._lock:
            documents = self._collection(collection)
            for key, document in documents.items():
                if matches(document, filter):
                    documents[key] = {**document, **copy.deepcopy(update), "_id": key}
                    count += 1
        return count


class SqlDocumentStore:
    """
    Document store over the ``documents`` table.

    Every call runs in its own session and transaction; SQLAlchemy errors are
    wrapped in :class:`PersistenceFailure`.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Document store operation failed")
            raise PersistenceFailure(str(exc)) from exc
        finally:
            session.close()

    @staticmethod
    def _select(session: Session, collection: str, filter: Filter | None) -> list[Document]:
        stmt = select(Document).where(Document.collection == collection)
        if filter and "_id" in filter:
            stmt = stmt.where(Document.doc_key == str(filter["_id"]))
        if filter and "user_id" in filter:
            stmt = stmt.where(Document.user_id == filter["user_id"])
        stmt = stmt.order_by(Document.id)
        return [row for row in session.scalars(stmt) if matches(row.body, filter)]

    @staticmethod
    def _body(row: Document) -> dict[str, Any]:
        return copy.deepcopy(row.body)

    def find_one(self, collection, filter):
        with self._session() as session:
            rows = self._select(session, collection, filter)
            return self._body(rows[0]) if rows else None

    def find(self, collection, filter=None):
        with self._session() as session:
            return [self._body(row) for row in self._select(session, collection, filter)]

    def find_one_and_update(self, collection, filter, update, upsert=False):
        with self._session() as session:
            rows = self._select(session, collection, filter)
            if rows:
                row = rows[0]
                row.body = {**row.body, **copy.deepcopy(update), "_id": row.doc_key}
                row.user_id = row.body.get("user_id")
                row.updated_at = datetime.utcnow()
                return self._body(row)
            if not upsert:
                return None
            document = _upserted(filter, copy.deepcopy(update))
            session.add(self._row(collection, document))
            return copy.deepcopy(document)

    def insert(self, collection, document):
        document = copy.deepcopy(document)
        document.setdefault("_id", new_document_id())
        with self._session() as session:
            session.add(self._row(collection, document))
        return copy.deepcopy(document)

    def update_many(self, collection, filter, update):
        with self._session() as session:
            rows = self._select(session, collection, filter)
            now = datetime.utcnow()
            for row in rows:
                row.body = {**row.body, **copy.deepcopy(update), "_id": row.doc_key}
                row.user_id = row.body.get("user_id")
                row.updated_at = now
            return len(rows)

    @staticmethod
    def _row(collection: str, document: dict[str, Any]) -> Document:
        return Document(
            collection=collection,
            doc_key=str(document["_id"]),
            user_id=document.get("user_id"),
            body=document,
        )

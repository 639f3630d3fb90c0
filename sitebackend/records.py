"""
Record store abstraction for Postgres and an in-memory document store.

Records are JSON documents addressed by (collection, key). No business rules
live here: the stores fetch, insert, set fields and delete.
"""

from __future__ import annotations

import copy
import re
import time
from typing import Any, Callable, Dict, Iterable, Optional, Protocol

from sqlalchemy import JSON, Column, Float, String, create_engine, delete, func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from sitebackend.errors import Conflict, InvalidKey, PersistenceFailure

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,127}$")


def check_key(key: Any) -> str:
    if not isinstance(key, str) or not KEY_PATTERN.match(key):
        raise InvalidKey(f"Malformed identity key: {key!r}")
    return key


class RecordStore(Protocol):
    """Interface for record persistence."""

    def fetch(self, collection: str, key: str) -> Optional[dict]:
        ...

    def insert(self, collection: str, key: str, fields: dict) -> dict:
        ...

    def partial_set(self, collection: str, key: str, fields: dict) -> Optional[dict]:
        """Set exactly ``fields``; None when the key does not exist."""
        ...

    def delete(self, collection: str, key: str) -> int:
        ...

    def delete_all(self, collection: str) -> int:
        ...

    def list(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        where: Optional[dict] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        ...

    def count(self, collection: str, where: Optional[dict] = None) -> int:
        ...

    def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...


def _matches(doc: dict, where: Optional[dict]) -> bool:
    if not where:
        return True
    for name, expected in where.items():
        if callable(expected):
            if not expected(doc.get(name)):
                return False
        elif doc.get(name) != expected:
            return False
    return True


def _order(
    docs: Iterable[dict], order_by: Optional[str], descending: bool
) -> list[dict]:
    docs = list(docs)
    if order_by:
        # Missing values sort last in either direction.
        present = [d for d in docs if d.get(order_by) is not None]
        missing = [d for d in docs if d.get(order_by) is None]
        present.sort(key=lambda d: d[order_by], reverse=descending)
        docs = present + missing
    return docs


class InMemoryRecordStore:
    """Document store kept in process memory, for development and tests."""

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}

    def _collection(self, collection: str) -> Dict[str, dict]:
        return self.collections.setdefault(collection, {})

    def fetch(self, collection: str, key: str) -> Optional[dict]:
        doc = self._collection(collection).get(check_key(key))
        return copy.deepcopy(doc) if doc is not None else None

    def insert(self, collection: str, key: str, fields: dict) -> dict:
        docs = self._collection(collection)
        if check_key(key) in docs:
            raise Conflict(f"Record {key} already exists in {collection}")
        docs[key] = copy.deepcopy(fields)
        return copy.deepcopy(docs[key])

    def partial_set(self, collection: str, key: str, fields: dict) -> Optional[dict]:
        doc = self._collection(collection).get(check_key(key))
        if doc is None:
            return None
        doc.update(copy.deepcopy(fields))
        return copy.deepcopy(doc)

    def delete(self, collection: str, key: str) -> int:
        removed = self._collection(collection).pop(check_key(key), None)
        return 1 if removed is not None else 0

    def delete_all(self, collection: str) -> int:
        docs = self._collection(collection)
        count = len(docs)
        docs.clear()
        return count

    def list(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        where: Optional[dict] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        docs = [
            copy.deepcopy(doc)
            for doc in self._collection(collection).values()
            if _matches(doc, where)
        ]
        docs = _order(docs, order_by, descending)
        return docs[:limit] if limit is not None else docs

    def count(self, collection: str, where: Optional[dict] = None) -> int:
        return sum(1 for doc in self._collection(collection).values() if _matches(doc, where))

    def ping(self) -> bool:
        return True

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        self.collections.clear()

    def close(self) -> None:
        pass


class SqlRecordStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlRecordStore")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _run(self, action: str, operation: Callable[[Session], Any]) -> Any:
        try:
            with self.Session() as session:
                return operation(session)
        except IntegrityError as exc:
            raise Conflict(f"Failed to {action}: record already exists") from exc
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to {action}", detail=str(exc)) from exc

    def fetch(self, collection: str, key: str) -> Optional[dict]:
        check_key(key)

        def operation(session: Session) -> Optional[dict]:
            row = session.get(RecordRow, (collection, key))
            return copy.deepcopy(row.data) if row else None

        return self._run(f"fetch {collection}/{key}", operation)

    def insert(self, collection: str, key: str, fields: dict) -> dict:
        check_key(key)

        def operation(session: Session) -> dict:
            if session.get(RecordRow, (collection, key)) is not None:
                raise Conflict(f"Record {key} already exists in {collection}")
            now = time.time()
            session.add(
                RecordRow(
                    collection=collection,
                    key=key,
                    data=copy.deepcopy(fields),
                    created_at=now,
                    updated_at=now,
                )
            )
            session.commit()
            return copy.deepcopy(fields)

        return self._run(f"insert {collection}/{key}", operation)

    def partial_set(self, collection: str, key: str, fields: dict) -> Optional[dict]:
        check_key(key)

        def operation(session: Session) -> Optional[dict]:
            row = session.get(RecordRow, (collection, key), with_for_update=True)
            if row is None:
                return None
            # Assign a new dict so the JSON column is flagged as modified.
            merged = dict(row.data or {})
            merged.update(copy.deepcopy(fields))
            row.data = merged
            row.updated_at = time.time()
            session.commit()
            return copy.deepcopy(merged)

        return self._run(f"update {collection}/{key}", operation)

    def delete(self, collection: str, key: str) -> int:
        check_key(key)

        def operation(session: Session) -> int:
            result = session.execute(
                delete(RecordRow).where(
                    RecordRow.collection == collection, RecordRow.key == key
                )
            )
            session.commit()
            return result.rowcount or 0

        return self._run(f"delete {collection}/{key}", operation)

    def delete_all(self, collection: str) -> int:
        def operation(session: Session) -> int:
            result = session.execute(
                delete(RecordRow).where(RecordRow.collection == collection)
            )
            session.commit()
            return result.rowcount or 0

        return self._run(f"clear {collection}", operation)

    def list(
        self,
        collection: str,
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        where: Optional[dict] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        def operation(session: Session) -> list[dict]:
            stmt = (
                select(RecordRow)
                .where(RecordRow.collection == collection)
                .order_by(RecordRow.created_at.asc())
            )
            rows = session.execute(stmt).scalars().all()
            return [copy.deepcopy(row.data) for row in rows]

        docs = [doc for doc in self._run(f"list {collection}", operation) if _matches(doc, where)]
        docs = _order(docs, order_by, descending)
        return docs[:limit] if limit is not None else docs

    def count(self, collection: str, where: Optional[dict] = None) -> int:
        if where:
            return len(self.list(collection, where=where))

        def operation(session: Session) -> int:
            stmt = select(func.count()).select_from(RecordRow).where(
                RecordRow.collection == collection
            )
            return session.execute(stmt).scalar_one()

        return self._run(f"count {collection}", operation)

    def ping(self) -> bool:
        def operation(session: Session) -> bool:
            session.execute(text("SELECT 1"))
            return True

        return self._run("reach the database", operation)

    def close(self) -> None:
        self.engine.dispose()


Base = declarative_base()


class RecordRow(Base):
    __tablename__ = "records"

    collection = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    data = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False, index=True)

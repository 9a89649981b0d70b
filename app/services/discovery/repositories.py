"""Document store backends and the typed discovery repository built on them."""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from app.config import settings
from app.models.discovery import (
    DiscoveredLead,
    DiscoveredLeadStatus,
    DiscoveryProfile,
    DiscoverySweep,
)
from app.models.document_record import DocumentRecord
from app.observability.metrics import metrics
from app.services.discovery.errors import DiscoveryPersistenceError

logger = logging.getLogger(__name__)

Filter = tuple[str, str, Any]

PROFILE_DOC_ID = "current"
_OPERATORS = {
    "==": lambda left, right: left == right,
    ">=": lambda left, right: left is not None and left >= right,
    "<=": lambda left, right: left is not None and left <= right,
    ">": lambda left, right: left is not None and left > right,
    "<": lambda left, right: left is not None and left < right,
}


class DocumentStore(Protocol):
    """Generic get / set-merge / query / increment boundary."""

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        ...

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False
    ) -> dict[str, Any]:
        ...

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        ...

    def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        ...

    def increment(
        self, collection: str, doc_id: str, amounts: dict[str, int | float]
    ) -> dict[str, Any]:
        ...

    def delete(self, collection: str, doc_id: str) -> bool:
        ...


def get_path(document: dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path such as ``stats.totalLeadsFound``."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _set_path(document: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Merge ``updates`` into a copy of ``base``; nested dicts merge recursively."""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _validate_filters(filters: Sequence[Filter]) -> None:
    for _, operator, _ in filters:
        if operator not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {operator}")


def matches(document: dict[str, Any], filters: Sequence[Filter]) -> bool:
    try:
        return all(
            _OPERATORS[operator](get_path(document, path), value)
            for path, operator, value in filters
        )
    except TypeError:
        return False


def apply_query(
    documents: Iterable[dict[str, Any]],
    filters: Sequence[Filter],
    *,
    order_by: str | None,
    descending: bool,
    limit: int | None,
    offset: int,
) -> list[dict[str, Any]]:
    """Filter, order and page documents the same way for every backend."""
    _validate_filters(filters)
    selected = [document for document in documents if matches(document, filters)]
    if order_by:
        present = [doc for doc in selected if get_path(doc, order_by) is not None]
        missing = [doc for doc in selected if get_path(doc, order_by) is None]
        present.sort(key=lambda doc: get_path(doc, order_by), reverse=descending)
        selected = present + missing
    start = max(0, offset)
    if limit is None:
        return selected[start:]
    return selected[start : start + max(0, limit)]


def _apply_increments(
    document: dict[str, Any], amounts: dict[str, int | float]
) -> dict[str, Any]:
    updated = copy.deepcopy(document)
    for path, amount in amounts.items():
        current = get_path(updated, path)
        base = current if isinstance(current, (int, float)) else 0
        _set_path(updated, path, base + amount)
    return updated


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe store used for API/local development and tests."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = Lock()

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False
    ) -> dict[str, Any]:
        with self._lock:
            documents = self._collections.setdefault(collection, {})
            existing = documents.get(doc_id)
            if merge and existing is not None:
                stored = deep_merge(existing, data)
            else:
                stored = copy.deepcopy(data)
            stored["id"] = doc_id
            documents[doc_id] = stored
            result = copy.deepcopy(stored)
        metrics.increment("store.write", tags={"backend": "memory"})
        return result

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        with self._lock:
            documents = copy.deepcopy(list(self._collections.get(collection, {}).values()))
        return apply_query(
            documents,
            filters,
            order_by=order_by,
            descending=descending,
            limit=limit,
            offset=offset,
        )

    def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        return len(self.query(collection, filters))

    def increment(
        self, collection: str, doc_id: str, amounts: dict[str, int | float]
    ) -> dict[str, Any]:
        with self._lock:
            documents = self._collections.get(collection, {})
            existing = documents.get(doc_id)
            if existing is None:
                raise DiscoveryPersistenceError(
                    f"Document {collection}/{doc_id} not found.", code="404_DOCUMENT_NOT_FOUND"
                )
            documents[doc_id] = _apply_increments(existing, amounts)
            return copy.deepcopy(documents[doc_id])

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(doc_id, None) is not None


class SqlDocumentStore(DocumentStore):
    """SQLModel-backed store that keeps each document as a JSON row."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_min_size: int | None = None,
        pool_max_size: int | None = None,
        auto_create_schema: bool = False,
    ) -> None:
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDocumentStore.")

        parsed_url = make_url(database_url)
        sync_url, connect_args, drivername = _coerce_sync_database_url(parsed_url)
        pool_min = max(pool_min_size or settings.db_pool_min_size, 1)
        pool_max = max(pool_max_size or settings.db_pool_max_size, pool_min)
        is_sqlite = drivername.startswith("sqlite")
        engine_kwargs: dict[str, Any] = {
            "echo": False,
            "connect_args": connect_args,
            "pool_pre_ping": not is_sqlite,
        }
        if not is_sqlite:
            engine_kwargs["pool_size"] = pool_min
            engine_kwargs["max_overflow"] = max(pool_max - pool_min, 0)

        self._engine: Engine = create_engine(sync_url, **engine_kwargs)
        if auto_create_schema:
            SQLModel.metadata.create_all(self._engine, tables=[DocumentRecord.__table__])
        self._backend = "sqlite" if is_sqlite else "postgres"
        # serializes read-modify-write for merge and increment
        self._write_lock = Lock()

    def dispose(self) -> None:
        """Close the underlying SQLAlchemy engine."""
        self._engine.dispose()

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._guard("get", collection), self._session() as session:
            record = self._find(session, collection, doc_id)
            return record.to_document() if record else None

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False
    ) -> dict[str, Any]:
        with self._write_lock, self._guard("set", collection), self._session() as session:
            record = self._find(session, collection, doc_id)
            payload = {key: value for key, value in data.items() if key != "id"}
            if record is None:
                record = DocumentRecord(collection=collection, doc_id=doc_id, data=payload)
                session.add(record)
            else:
                record.data = deep_merge(record.data, payload) if merge else payload
            session.commit()
            session.refresh(record)
            document = record.to_document()
        metrics.increment("store.write", tags={"backend": self._backend})
        return document

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        with self._guard("query", collection), self._session() as session:
            statement = select(DocumentRecord).where(DocumentRecord.collection == collection)
            documents = [record.to_document() for record in session.exec(statement).all()]
        return apply_query(
            documents,
            filters,
            order_by=order_by,
            descending=descending,
            limit=limit,
            offset=offset,
        )

    def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        return len(self.query(collection, filters))

    def increment(
        self, collection: str, doc_id: str, amounts: dict[str, int | float]
    ) -> dict[str, Any]:
        with self._write_lock, self._guard("increment", collection), self._session() as session:
            record = self._find(session, collection, doc_id)
            if record is None:
                raise DiscoveryPersistenceError(
                    f"Document {collection}/{doc_id} not found.", code="404_DOCUMENT_NOT_FOUND"
                )
            record.data = _apply_increments(record.data, amounts)
            session.commit()
            session.refresh(record)
            return record.to_document()

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._write_lock, self._guard("delete", collection), self._session() as session:
            record = self._find(session, collection, doc_id)
            if record is None:
                return False
            session.delete(record)
            session.commit()
            return True

    @staticmethod
    def _find(session: Session, collection: str, doc_id: str) -> DocumentRecord | None:
        statement = select(DocumentRecord).where(
            DocumentRecord.collection == collection,
            DocumentRecord.doc_id == doc_id,
        )
        return session.exec(statement).first()

    @contextmanager
    def _guard(self, operation: str, collection: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.exception(
                "discovery.store.error",
                extra={"operation": operation, "collection": collection, "backend": self._backend},
            )
            raise DiscoveryPersistenceError(f"Failed to {operation} document.") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def _coerce_sync_database_url(url: URL) -> tuple[str, dict[str, Any], str]:
    """Convert async connection strings into sync SQLAlchemy URLs."""
    drivername = url.drivername
    connect_args: dict[str, Any] = {}
    if drivername.endswith("+asyncpg"):
        drivername = drivername.replace("+asyncpg", "+psycopg2")
    elif drivername.endswith("+aiosqlite"):
        drivername = drivername.replace("+aiosqlite", "")
    sync_url = url.set(drivername=drivername)
    query = dict(sync_url.query) if sync_url.query else {}
    removed_ssl = query.pop("ssl", None) is not None
    sync_url = sync_url.set(query=query or None)
    if drivername.startswith("postgresql") and removed_ssl and "sslmode" not in query:
        connect_args["sslmode"] = "require"
    if drivername.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return sync_url.render_as_string(hide_password=False), connect_args, drivername


def build_document_store(database_url: str | None = None) -> DocumentStore:
    """Instantiate a DocumentStore using DATABASE_URL when available."""
    resolved_url = database_url or settings.database_url
    if not resolved_url:
        logger.info("discovery.store.initialized", extra={"backend": "memory"})
        return InMemoryDocumentStore()
    try:
        store = SqlDocumentStore(
            resolved_url,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            auto_create_schema=settings.db_auto_create_schema,
        )
    except Exception:
        logger.exception("discovery.store.init_failed", extra={"backend": "database"})
        raise
    logger.info("discovery.store.initialized", extra={"backend": "database"})
    return store


def company_collection(company_id: str, name: str) -> str:
    return f"companies/{company_id}/{name}"


class DiscoveryRepository:
    """Typed access to a tenant's profile, sweeps and discovered leads."""

    PROFILE = "discoveryProfile"
    SWEEPS = "discoverySweeps"
    LEADS = "discoveredLeads"

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    @property
    def store(self) -> DocumentStore:
        return self._store

    # Profiles

    def get_profile(self, company_id: str) -> DiscoveryProfile | None:
        document = self._store.get(company_collection(company_id, self.PROFILE), PROFILE_DOC_ID)
        return DiscoveryProfile.model_validate(document) if document else None

    def save_profile(self, profile: DiscoveryProfile) -> DiscoveryProfile:
        document = self._store.set(
            company_collection(profile.company_id, self.PROFILE),
            PROFILE_DOC_ID,
            profile.to_document(),
        )
        return DiscoveryProfile.model_validate(document)

    def merge_profile(self, company_id: str, updates: dict[str, Any]) -> DiscoveryProfile:
        document = self._store.set(
            company_collection(company_id, self.PROFILE), PROFILE_DOC_ID, updates, merge=True
        )
        return DiscoveryProfile.model_validate(document)

    def delete_profile(self, company_id: str) -> bool:
        return self._store.delete(company_collection(company_id, self.PROFILE), PROFILE_DOC_ID)

    def increment_profile_stats(self, company_id: str, **amounts: int) -> DiscoveryProfile:
        """Atomically bump ``stats`` counters, e.g. ``leadsDismissed=1``."""
        document = self._store.increment(
            company_collection(company_id, self.PROFILE),
            PROFILE_DOC_ID,
            {f"stats.{field}": amount for field, amount in amounts.items()},
        )
        return DiscoveryProfile.model_validate(document)

    # Sweeps

    def create_sweep(self, sweep: DiscoverySweep) -> DiscoverySweep:
        sweep_id = sweep.id or uuid4().hex
        document = self._store.set(
            company_collection(sweep.company_id, self.SWEEPS),
            sweep_id,
            sweep.model_copy(update={"id": sweep_id}).to_document(),
        )
        return DiscoverySweep.model_validate(document)

    def update_sweep(
        self, company_id: str, sweep_id: str, updates: dict[str, Any]
    ) -> DiscoverySweep:
        document = self._store.set(
            company_collection(company_id, self.SWEEPS), sweep_id, updates, merge=True
        )
        return DiscoverySweep.model_validate(document)

    def get_sweep(self, company_id: str, sweep_id: str) -> DiscoverySweep | None:
        document = self._store.get(company_collection(company_id, self.SWEEPS), sweep_id)
        return DiscoverySweep.model_validate(document) if document else None

    def list_sweeps(self, company_id: str, *, limit: int = 10) -> list[DiscoverySweep]:
        documents = self._store.query(
            company_collection(company_id, self.SWEEPS),
            order_by="startedAt",
            descending=True,
            limit=limit,
        )
        return [DiscoverySweep.model_validate(document) for document in documents]

    def count_sweeps_since(self, company_id: str, since_ms: int) -> int:
        return self._store.count(
            company_collection(company_id, self.SWEEPS), [("startedAt", ">=", since_ms)]
        )

    # Leads

    def add_leads(self, leads: Iterable[DiscoveredLead]) -> list[DiscoveredLead]:
        saved: list[DiscoveredLead] = []
        for lead in leads:
            lead_id = lead.id or uuid4().hex
            document = self._store.set(
                company_collection(lead.company_id, self.LEADS),
                lead_id,
                lead.model_copy(update={"id": lead_id}).to_document(),
            )
            saved.append(DiscoveredLead.model_validate(document))
        return saved

    def get_lead(self, company_id: str, lead_id: str) -> DiscoveredLead | None:
        document = self._store.get(company_collection(company_id, self.LEADS), lead_id)
        return DiscoveredLead.model_validate(document) if document else None

    def update_lead(
        self, company_id: str, lead_id: str, updates: dict[str, Any]
    ) -> DiscoveredLead:
        document = self._store.set(
            company_collection(company_id, self.LEADS), lead_id, updates, merge=True
        )
        return DiscoveredLead.model_validate(document)

    def list_leads(
        self,
        company_id: str,
        *,
        status: DiscoveredLeadStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DiscoveredLead], int]:
        """Return one page of leads (newest first) and the total match count."""
        collection = company_collection(company_id, self.LEADS)
        filters: list[Filter] = []
        if status is not None:
            filters.append(("status", "==", status.value))
        documents = self._store.query(
            collection,
            filters,
            order_by="discoveredAt",
            descending=True,
            limit=limit,
            offset=offset,
        )
        total = self._store.count(collection, filters)
        return [DiscoveredLead.model_validate(document) for document in documents], total

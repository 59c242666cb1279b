"""
Recipient and history stores.

Both stores are views over one DigestDatastore, which keeps the whole state in
memory and rewrites it in full through a repository on every mutation. The
persisted document has two top-level maps, userSettings and digestHistory.
"""

import json
import logging
import os
import threading
import uuid
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

import pytz
from pydantic import ValidationError

from errors import PersistenceFailed
from models import DigestRecord, DigestSource, RecipientPreferences

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50
DEFAULT_HISTORY_PAGE = 20
SUPABASE_TABLE = "digest_store"
SUPABASE_ROW_ID = "default"


def utc_now() -> datetime:
    return datetime.now(pytz.utc)


def empty_document() -> dict[str, Any]:
    return {"userSettings": {}, "digestHistory": {}}


class DigestRepository(Protocol):
    """Durable storage for the serialized store document."""

    def load(self) -> dict[str, Any]: ...

    def save(self, document: dict[str, Any]) -> None: ...


class InMemoryRepository:
    """Repository that keeps the last saved document in memory."""

    def __init__(self, document: dict[str, Any] | None = None):
        self.document = json.loads(json.dumps(document)) if document else empty_document()
        self.save_count = 0

    def load(self) -> dict[str, Any]:
        return json.loads(json.dumps(self.document))

    def save(self, document: dict[str, Any]) -> None:
        self.document = json.loads(json.dumps(document))
        self.save_count += 1


class JsonFileRepository:
    """JSON file repository. Writes go to a temp file that replaces the target."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return empty_document()
        try:
            with open(self.path, encoding="utf-8") as handle:
                document = json.load(handle)
        except json.JSONDecodeError as e:
            raise self._quarantine(str(e)) from e
        except OSError as e:
            raise PersistenceFailed(f"Could not read {self.path}: {e}") from e

        if not isinstance(document, dict):
            raise self._quarantine(f"expected an object, got {type(document).__name__}")
        return document

    def _quarantine(self, reason: str) -> PersistenceFailed:
        # Keep the unreadable file so the next save cannot overwrite it
        backup = self.path.with_name(
            f"{self.path.name}.corrupt-{utc_now().strftime('%Y%m%d%H%M%S')}"
        )
        self.path.replace(backup)
        return PersistenceFailed(f"Unreadable store file moved to {backup}: {reason}")

    def save(self, document: dict[str, Any]) -> None:
        temp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as handle:
                json.dump(document, handle, ensure_ascii=False, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            temp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailed(f"Could not write {self.path}: {e}") from e


class SupabaseRepository:
    """Stores the whole document in a single Supabase row (see migrate_digest_store.py)."""

    def __init__(self, client, table: str = SUPABASE_TABLE, row_id: str = SUPABASE_ROW_ID):
        self.client = client
        self.table = table
        self.row_id = row_id

    def load(self) -> dict[str, Any]:
        try:
            result = (
                self.client.table(self.table)
                .select("user_settings, digest_history")
                .eq("id", self.row_id)
                .execute()
            )
        except Exception as e:
            raise PersistenceFailed(f"Could not read Supabase table {self.table}: {e}") from e
        if not result.data:
            return empty_document()
        row = result.data[0]
        return {
            "userSettings": row.get("user_settings") or {},
            "digestHistory": row.get("digest_history") or {},
        }

    def save(self, document: dict[str, Any]) -> None:
        try:
            self.client.table(self.table).upsert({
                "id": self.row_id,
                "user_settings": document["userSettings"],
                "digest_history": document["digestHistory"],
                "updated_at": utc_now().isoformat(),
            }).execute()
        except Exception as e:
            raise PersistenceFailed(f"Could not write Supabase table {self.table}: {e}") from e


def get_repository(backend: str | None = None) -> DigestRepository:
    """Build the repository selected by STORE_BACKEND."""
    from config import DATA_FILE, STORE_BACKEND, SUPABASE_KEY, SUPABASE_URL, is_supabase_configured

    backend = backend or STORE_BACKEND
    if backend == "supabase":
        if not is_supabase_configured():
            raise ValueError("STORE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_KEY")
        from supabase import create_client

        return SupabaseRepository(create_client(SUPABASE_URL, SUPABASE_KEY))
    return JsonFileRepository(DATA_FILE)


class DigestDatastore:
    """
    In-memory state shared by the recipient and history stores.

    Persistence failures never raise to callers: they are logged, kept in
    `persistence_failures` and passed to registered failure handlers. The
    in-memory state stays authoritative for the rest of the process lifetime.
    """

    def __init__(self, repository: DigestRepository, clock: Callable[[], datetime] = utc_now):
        self.repository = repository
        self.clock = clock
        self.lock = threading.RLock()
        self.settings: dict[str, RecipientPreferences] = {}
        self.history: dict[str, list[DigestRecord]] = {}
        self.persistence_failures: deque[PersistenceFailed] = deque(maxlen=100)
        self.failure_count = 0
        self._failure_handlers: list[Callable[[PersistenceFailed], None]] = []
        self._load()

    def _load(self) -> None:
        try:
            document = self.repository.load()
        except PersistenceFailed as e:
            logger.error("Error loading digest store, starting empty: %s", e)
            return

        for recipient_id, raw in (document.get("userSettings") or {}).items():
            try:
                self.settings[recipient_id] = RecipientPreferences.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping unreadable settings for %s: %s", recipient_id, e)

        for recipient_id, raw_records in (document.get("digestHistory") or {}).items():
            records = []
            for raw in raw_records or []:
                try:
                    records.append(DigestRecord.model_validate(raw))
                except ValidationError as e:
                    logger.warning("Skipping unreadable digest for %s: %s", recipient_id, e)
            self.history[recipient_id] = records[:HISTORY_LIMIT]

        logger.info(
            "Loaded digest store: %d recipient(s), %d history list(s)",
            len(self.settings),
            len(self.history),
        )

    def add_failure_handler(self, handler: Callable[[PersistenceFailed], None]) -> None:
        self._failure_handlers.append(handler)

    def to_document(self) -> dict[str, Any]:
        with self.lock:
            return {
                "userSettings": {
                    recipient_id: prefs.model_dump(mode="json", by_alias=True)
                    for recipient_id, prefs in self.settings.items()
                },
                "digestHistory": {
                    recipient_id: [r.model_dump(mode="json", by_alias=True) for r in records]
                    for recipient_id, records in self.history.items()
                },
            }

    def persist(self) -> bool:
        """Write the full state. Returns False when the write failed."""
        with self.lock:
            document = self.to_document()
            try:
                self.repository.save(document)
                return True
            except PersistenceFailed as e:
                self.failure_count += 1
                self.persistence_failures.append(e)
                logger.error("Error saving digest store: %s", e)
                failure = e

        for handler in self._failure_handlers:
            try:
                handler(failure)
            except Exception:
                logger.exception("Persistence failure handler raised")
        return False


class RecipientStore:
    """Recipient id -> digest preferences and push token."""

    def __init__(self, datastore: DigestDatastore):
        self.datastore = datastore
        self._listeners: list[Callable[[str], None]] = []

    def add_listener(self, listener: Callable[[str], None]) -> None:
        """Register a callable invoked with the recipient id after each change."""
        self._listeners.append(listener)

    def _notify(self, recipient_id: str) -> None:
        for listener in self._listeners:
            listener(recipient_id)

    def get(self, recipient_id: str) -> RecipientPreferences | None:
        with self.datastore.lock:
            return self.datastore.settings.get(recipient_id)

    def save(self, recipient_id: str, updates: dict[str, Any]) -> RecipientPreferences:
        """Merge supplied fields into the recipient's preferences and persist."""
        unknown = set(updates) - set(RecipientPreferences.model_fields) - {"updated_at"}
        if unknown:
            raise ValueError(f"Unknown preference fields: {', '.join(sorted(unknown))}")

        with self.datastore.lock:
            current = self.datastore.settings.get(recipient_id) or RecipientPreferences()
            merged = RecipientPreferences.model_validate({
                **current.model_dump(),
                **updates,
                "updated_at": self.datastore.clock(),
            })
            self.datastore.settings[recipient_id] = merged
            self.datastore.persist()

        self._notify(recipient_id)
        return merged

    def register_token(self, recipient_id: str, token: str) -> RecipientPreferences:
        return self.save(recipient_id, {"push_token": token})

    def due_at(self, hour: int) -> list[tuple[str, RecipientPreferences]]:
        """Recipients whose scheduled hour is `hour` (UTC) and who can be delivered to."""
        if not 0 <= hour <= 23:
            raise ValueError(f"hour must be between 0 and 23, got {hour}")
        with self.datastore.lock:
            return [
                (recipient_id, prefs)
                for recipient_id, prefs in self.datastore.settings.items()
                if prefs.is_due_at(hour)
            ]

    def all_enabled_with_token(self) -> list[str]:
        with self.datastore.lock:
            return [
                recipient_id
                for recipient_id, prefs in self.datastore.settings.items()
                if prefs.deliverable
            ]

    def all(self) -> list[tuple[str, RecipientPreferences]]:
        with self.datastore.lock:
            return list(self.datastore.settings.items())


class HistoryStore:
    """Per-recipient digest history, newest first, capped at HISTORY_LIMIT."""

    def __init__(self, datastore: DigestDatastore):
        self.datastore = datastore

    def append(
        self,
        recipient_id: str,
        content: str,
        topic: str,
        sources: Iterable[DigestSource] = (),
    ) -> DigestRecord:
        record = DigestRecord(
            id=str(uuid.uuid4()),
            content=content,
            topic=topic,
            sources=list(sources),
            created_at=self.datastore.clock(),
        )
        with self.datastore.lock:
            records = [record, *self.datastore.history.get(recipient_id, [])]
            self.datastore.history[recipient_id] = records[:HISTORY_LIMIT]
            self.datastore.persist()
        return record

    def list(self, recipient_id: str, limit: int = DEFAULT_HISTORY_PAGE) -> list[DigestRecord]:
        with self.datastore.lock:
            return list(self.datastore.history.get(recipient_id, [])[:max(limit, 0)])

    def get(self, recipient_id: str, digest_id: str) -> DigestRecord | None:
        with self.datastore.lock:
            for record in self.datastore.history.get(recipient_id, []):
                if record.id == digest_id:
                    return record
        return None

    def latest(self, recipient_id: str) -> DigestRecord | None:
        with self.datastore.lock:
            records = self.datastore.history.get(recipient_id)
            return records[0] if records else None

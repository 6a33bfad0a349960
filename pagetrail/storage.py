import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Any, Optional

import filelock

from pagetrail.errors import LogStoreError, SinkError
from pagetrail.models import ChildExecutionRecord, ExecutionRecord, utc_now

log = logging.getLogger(__name__)

# How long to wait for a file lock before giving up (seconds)
_LOCK_TIMEOUT = 10

# Execution ids and table names become file names
_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def _safe_name(name: str) -> bool:
    return bool(name) and bool(_SAFE_NAME_RE.match(name)) and ".." not in name


# ---------------------------------------------------------------------------
# Execution log store
# ---------------------------------------------------------------------------

class ExecutionLogStore(ABC):
    """
    Append-mostly log of one parent record plus one child record per page.

    The parent is mutated in place through update_parent_status(); child
    records are immutable once appended. Write failures raise LogStoreError.
    """

    @abstractmethod
    def create_parent_record(self, record: ExecutionRecord) -> None:
        ...

    @abstractmethod
    def update_parent_status(
        self,
        execution_id: str,
        status: str,
        is_last: bool,
        **fields: Any,
    ) -> None:
        """
        Set status and is_last on the parent. Extra keyword fields
        (total_items_processed, pages_processed, pagination_type,
        last_error) are written alongside when given.
        """

    @abstractmethod
    def append_child_record(self, record: ChildExecutionRecord) -> None:
        ...

    @abstractmethod
    def get_parent_record(self, execution_id: str) -> Optional[ExecutionRecord]:
        ...

    @abstractmethod
    def list_child_records(self, execution_id: str) -> list[ChildExecutionRecord]:
        ...


_UPDATABLE_FIELDS = frozenset({
    "total_items_processed", "pages_processed", "pagination_type", "last_error",
})


def _apply_update(parent: dict[str, Any], status: str, is_last: bool, fields: dict[str, Any]) -> None:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise LogStoreError(f"Cannot update parent fields: {sorted(unknown)}")
    parent.update(fields)
    parent["status"]     = status
    parent["is_last"]    = is_last
    parent["updated_at"] = utc_now()


class JsonExecutionLogStore(ExecutionLogStore):
    """
    Flat-file execution log.

    Writes to:
        {data_dir}/executions/{execution_id}.json

    Each file is a JSON array whose first element is the parent record,
    followed by child records in append order. Every read-modify-write
    happens under a filelock on a sibling .lock file, so concurrent
    writers to the same execution serialise while different executions
    proceed in parallel.
    """

    def __init__(self, data_dir: str) -> None:
        self._dir = Path(data_dir) / "executions"

    def create_parent_record(self, record: ExecutionRecord) -> None:
        path = self._path(record.execution_id)

        def _create(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
            if entries:
                raise LogStoreError(f"Execution {record.execution_id} already exists")
            return [record.to_dict()]

        self._locked_update(path, _create)
        log.debug("Created parent record %s", record.execution_id)

    def update_parent_status(self, execution_id: str, status: str, is_last: bool, **fields: Any) -> None:
        path = self._path(execution_id)

        def _update(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
            if not entries:
                raise LogStoreError(f"Unknown execution {execution_id}")
            _apply_update(entries[0], status, is_last, fields)
            return entries

        self._locked_update(path, _update)
        log.debug("Parent %s -> %s (is_last=%s)", execution_id, status, is_last)

    def append_child_record(self, record: ChildExecutionRecord) -> None:
        path = self._path(record.execution_id)

        def _append(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
            if not entries:
                raise LogStoreError(f"Unknown execution {record.execution_id}")
            entries.append(record.to_dict())
            return entries

        self._locked_update(path, _append)

    def get_parent_record(self, execution_id: str) -> Optional[ExecutionRecord]:
        entries = self._read_entries(execution_id)
        return ExecutionRecord.from_dict(entries[0]) if entries else None

    def list_child_records(self, execution_id: str) -> list[ChildExecutionRecord]:
        entries = self._read_entries(execution_id)
        return [ChildExecutionRecord.from_dict(e) for e in entries[1:]]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _path(self, execution_id: str) -> Path:
        if not _safe_name(execution_id):
            raise LogStoreError(f"Invalid execution id {execution_id!r}")
        return self._dir / f"{execution_id}.json"

    def _read_entries(self, execution_id: str) -> list[dict[str, Any]]:
        if not _safe_name(execution_id):
            return []
        path = self._path(execution_id)
        if not path.exists():
            return []
        try:
            with filelock.FileLock(str(path.with_suffix(".lock")), timeout=_LOCK_TIMEOUT):
                return _load_array(path)
        except filelock.Timeout as exc:
            raise LogStoreError(f"Lock timeout reading {path}") from exc
        except (OSError, ValueError) as exc:
            raise LogStoreError(f"Read error for {path}: {exc}") from exc

    def _locked_update(self, path: Path, mutate) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with filelock.FileLock(str(path.with_suffix(".lock")), timeout=_LOCK_TIMEOUT):
                entries = _load_array(path) if path.exists() else []
                _dump_array(path, mutate(entries))
        except LogStoreError:
            raise
        except filelock.Timeout as exc:
            raise LogStoreError(f"Lock timeout for {path}") from exc
        except (OSError, ValueError, TypeError) as exc:
            raise LogStoreError(f"Write error for {path}: {exc}") from exc


class MemoryExecutionLogStore(ExecutionLogStore):
    """In-process log store. Used by tests and the `memory` log_store type."""

    def __init__(self) -> None:
        self._entries: dict[str, list[dict[str, Any]]] = {}
        self._lock = Lock()

    def create_parent_record(self, record: ExecutionRecord) -> None:
        with self._lock:
            if record.execution_id in self._entries:
                raise LogStoreError(f"Execution {record.execution_id} already exists")
            self._entries[record.execution_id] = [record.to_dict()]

    def update_parent_status(self, execution_id: str, status: str, is_last: bool, **fields: Any) -> None:
        with self._lock:
            entries = self._entries.get(execution_id)
            if not entries:
                raise LogStoreError(f"Unknown execution {execution_id}")
            _apply_update(entries[0], status, is_last, fields)

    def append_child_record(self, record: ChildExecutionRecord) -> None:
        with self._lock:
            entries = self._entries.get(record.execution_id)
            if not entries:
                raise LogStoreError(f"Unknown execution {record.execution_id}")
            entries.append(record.to_dict())

    def get_parent_record(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self._lock:
            entries = self._entries.get(execution_id)
            return ExecutionRecord.from_dict(entries[0]) if entries else None

    def list_child_records(self, execution_id: str) -> list[ChildExecutionRecord]:
        with self._lock:
            entries = list(self._entries.get(execution_id, []))
        return [ChildExecutionRecord.from_dict(e) for e in entries[1:]]


# ---------------------------------------------------------------------------
# Item sinks
# ---------------------------------------------------------------------------

class ItemSink(ABC):
    """Destination table for extracted items. put() raises SinkError on failure."""

    @abstractmethod
    def put(self, table_name: str, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def get(self, table_name: str, item_id: str) -> Optional[dict[str, Any]]:
        ...


class JsonItemSink(ItemSink):
    """
    Flat-file item tables.

    Writes to:
        {data_dir}/tables/{table_name}.json

    Each table is a JSON array of records. put() replaces an existing
    record with the same `id` rather than duplicating it.
    """

    def __init__(self, data_dir: str) -> None:
        self._dir = Path(data_dir) / "tables"

    def put(self, table_name: str, record: dict[str, Any]) -> None:
        path = self._path(table_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with filelock.FileLock(str(path.with_suffix(".lock")), timeout=_LOCK_TIMEOUT):
                existing = _load_array(path) if path.exists() else []
                merged   = [r for r in existing if r.get("id") != record["id"]]
                merged.append(record)
                _dump_array(path, merged)
        except filelock.Timeout as exc:
            raise SinkError(f"Lock timeout for {path}") from exc
        except (OSError, ValueError, TypeError) as exc:
            raise SinkError(f"Write error for {path}: {exc}") from exc

    def get(self, table_name: str, item_id: str) -> Optional[dict[str, Any]]:
        path = self._path(table_name)
        if not path.exists():
            return None
        with filelock.FileLock(str(path.with_suffix(".lock")), timeout=_LOCK_TIMEOUT):
            for record in _load_array(path):
                if record.get("id") == item_id:
                    return record
        return None

    def _path(self, table_name: str) -> Path:
        if not _safe_name(table_name):
            raise SinkError(f"Invalid table name {table_name!r}")
        return self._dir / f"{table_name}.json"


class MemoryItemSink(ItemSink):
    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = Lock()

    def put(self, table_name: str, record: dict[str, Any]) -> None:
        with self._lock:
            self.tables.setdefault(table_name, {})[record["id"]] = record

    def get(self, table_name: str, item_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            return self.tables.get(table_name, {}).get(item_id)


# ---------------------------------------------------------------------------
# Construction from settings
# ---------------------------------------------------------------------------

def build_log_store(settings: dict[str, Any]) -> ExecutionLogStore:
    store_type = settings.get("log_store", {}).get("type", "json")
    if store_type == "json":
        return JsonExecutionLogStore(settings.get("data_dir", "data"))
    if store_type == "memory":
        return MemoryExecutionLogStore()
    raise ValueError(f"Unknown log_store type: {store_type!r}. Available: ['json', 'memory']")


def build_item_sink(settings: dict[str, Any]) -> ItemSink:
    store_type = settings.get("log_store", {}).get("type", "json")
    if store_type == "memory":
        return MemoryItemSink()
    return JsonItemSink(settings.get("data_dir", "data"))


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

def _load_array(path: Path) -> list[dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path} does not hold a JSON array")
    return data


def _dump_array(path: Path, entries: list[dict[str, Any]]) -> None:
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(entries, f, indent=2, ensure_ascii=False, default=str)
    tmp.replace(path)

"""Data access layer for the POS ledger.

This module owns every piece of I/O. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file,
   under an exclusive lock file so separate processes never work on stale
   copies of it.
3. Record stores: the :class:`RecordStore` protocol plus an in-memory and an
   ``openpyxl`` backed implementation. Both expose the single-field
   compare-and-swap primitive that sequence numbering and stock updates are
   built on.
"""


from __future__ import annotations

import configparser
import copy
import json
import threading
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

from filelock import FileLock, Timeout
from openpyxl.workbook import Workbook
import openpyxl

from . import log


CONFIG_FILE_NAME = "config.ini"
STORE_HEADERS = ("ID", "Document")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 0.05
DEFAULT_LOCK_TIMEOUT = 10.0
LOCK_SUFFIX = ".lock"
DEFAULT_MONEY_QUANTUM = Decimal("1")
MAX_BACKOFF = 1.0

CollectionName = Union[str, Enum]
Subscriber = Callable[[List[Dict[str, Any]]], None]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_actor: str
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    money_quantum: Decimal = DEFAULT_MONEY_QUANTUM
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT


class RecordStoreError(RuntimeError):
    """Raised when the backing store cannot complete a read or write."""


class ContentionError(RecordStoreError):
    """Raised when a compare-and-swap loop ran out of attempts."""

    def __init__(self, path: str, attempts: int) -> None:
        super().__init__(f"Gave up on {path} after {attempts} attempts")
        self.path = path
        self.attempts = attempts


class WorkbookLockedError(RecordStoreError):
    """Raised when another process keeps the data file locked past the timeout."""


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` are mandatory. ``[Concurrency]`` and
    ``[Pricing]`` are optional and fall back to the module defaults. Relative
    ``DataFile`` entries are expanded against ``base_path`` when provided, or
    against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional tuning value cannot be parsed or is out of
            range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_actor = parser.get("Defaults", "DefaultActor")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_attempts = parser.getint("Concurrency", "MaxAttempts", fallback=DEFAULT_MAX_ATTEMPTS)
    backoff_base = parser.getfloat("Concurrency", "BackoffBase", fallback=DEFAULT_BACKOFF_BASE)
    if max_attempts < 1:
        raise ValueError("Concurrency.MaxAttempts must be at least 1")
    if backoff_base < 0:
        raise ValueError("Concurrency.BackoffBase must be zero or positive")
    lock_timeout = parser.getfloat("Concurrency", "LockTimeout", fallback=DEFAULT_LOCK_TIMEOUT)
    if lock_timeout < 0:
        raise ValueError("Concurrency.LockTimeout must be zero or positive")

    quantum_raw = parser.get("Pricing", "RoundingQuantum", fallback=str(DEFAULT_MONEY_QUANTUM))
    try:
        money_quantum = Decimal(quantum_raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid Pricing.RoundingQuantum: {quantum_raw!r}") from exc
    if money_quantum <= 0:
        raise ValueError("Pricing.RoundingQuantum must be positive")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_actor=default_actor,
        max_attempts=max_attempts,
        backoff_base=backoff_base,
        money_quantum=money_quantum,
        lock_timeout=lock_timeout,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def lock_path_for(data_file: Path) -> Path:
    """Sidecar lock file guarding ``data_file`` across processes."""

    data_file = Path(data_file).expanduser().resolve()
    return data_file.with_name(data_file.name + LOCK_SUFFIX)


def acquire_workbook_lock(data_file: Path, timeout: float = DEFAULT_LOCK_TIMEOUT) -> FileLock:
    """Take the exclusive cross-process lock for ``data_file``.

    The workbook is read, mutated in memory and written back as a whole, so
    whoever loads it must hold this lock until the save completes. Two
    processes working on stale copies would otherwise hand out the same
    document numbers and overwrite each other's stock.

    Args:
        data_file (Path): Workbook the lock protects.
        timeout (float): Seconds to wait for a competing holder.

    Returns:
        FileLock: The acquired lock. Call ``release()`` when done.

    Raises:
        FileNotFoundError: If the folder holding ``data_file`` does not exist.
        WorkbookLockedError: If the lock is still held after ``timeout``.
    """

    lock_file = lock_path_for(data_file)
    if not lock_file.parent.is_dir():
        raise FileNotFoundError(f"Workbook folder not found: {lock_file.parent}")
    lock = FileLock(str(lock_file))
    try:
        lock.acquire(timeout=timeout)
    except Timeout as exc:
        raise WorkbookLockedError(
            f"Workbook '{data_file}' is in use by another process (waited {timeout}s)"
        ) from exc
    log.debug("Acquired workbook lock '%s'", lock.lock_file)
    return lock


def release_workbook_lock(lock: Optional[FileLock]) -> None:
    if lock is not None and lock.is_locked:
        lock.release()
        log.debug("Released workbook lock '%s'", lock.lock_file)


def collection_name(collection: CollectionName) -> str:
    """Normalise a collection given as an enum member or a plain string."""

    if isinstance(collection, Enum):
        return str(collection.value)
    return str(collection)


def split_path(path: str) -> Tuple[str, str, str]:
    """Split a ``Collection/record_id/field`` path into its three parts.

    Raises:
        ValueError: If the path does not have exactly three non-empty parts.
    """

    parts = path.split("/")
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Invalid record path: {path!r}")
    return parts[0], parts[1], parts[2]


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def compare_and_swap(
    store: "RecordStore",
    path: str,
    transform: Callable[[Optional[Dict[str, Any]]], Any],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[Any, Any]:
    """Read-compute-write ``path`` until the conditional update is confirmed.

    ``transform`` receives the freshest copy of the owning document (``None``
    when it does not exist) and returns the value to write. Exceptions raised
    by ``transform`` propagate immediately; lost races and
    :class:`RecordStoreError` failures are retried with capped exponential
    backoff.

    Args:
        store (RecordStore): Store holding the contended field.
        path (str): ``Collection/record_id/field`` path of the field.
        transform (Callable): Computes the new value from the current document.
        max_attempts (int): Total number of attempts before giving up.
        backoff_base (float): Delay in seconds before the second attempt,
            doubled on each further attempt and capped at ``MAX_BACKOFF``.
        sleep (Callable): Sleep function, injectable for tests.

    Returns:
        tuple: ``(previous, new)`` values of the field as confirmed by the
            winning write.

    Raises:
        ContentionError: If every attempt lost or failed. The last store error,
            if any, is chained as the cause.
    """

    collection, record_id, field_name = split_path(path)
    last_exc: Optional[Exception] = None
    for attempt in range(max_attempts):
        try:
            document = store.get(collection, record_id)
            expected = None if document is None else document.get(field_name)
            candidate = transform(document)
            if store.conditional_update(path, expected, candidate):
                return expected, candidate
            last_exc = None
        except RecordStoreError as exc:
            log.warning("Store error on %s (attempt %d/%d): %s", path, attempt + 1, max_attempts, exc)
            last_exc = exc
        if attempt < max_attempts - 1:
            sleep(min(backoff_base * (2 ** attempt), MAX_BACKOFF))

    log.error("Compare-and-swap on %s exhausted %d attempts", path, max_attempts)
    raise ContentionError(path, max_attempts) from last_exc


class RecordStore(Protocol):
    """Document store contract consumed by the ledger components."""

    def get(self, collection: CollectionName, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    def get_all(self, collection: CollectionName) -> List[Dict[str, Any]]:
        ...

    def create(
        self,
        collection: CollectionName,
        document: Mapping[str, Any],
        record_id: Optional[str] = None,
    ) -> str:
        ...

    def update(self, collection: CollectionName, record_id: str, fields: Mapping[str, Any]) -> None:
        ...

    def subscribe(self, collection: CollectionName, callback: Subscriber) -> Callable[[], None]:
        ...

    def conditional_update(self, path: str, expected: Any, new: Any) -> bool:
        ...


class _BaseRecordStore:
    """Shared locking and change-notification plumbing for the stores.

    Subclasses implement ``_read``, ``_read_all``, ``_write`` and ``_exists``
    and never need to take the lock themselves.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[Subscriber]] = {}

    def _read(self, name: str, record_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _read_all(self, name: str) -> List[Tuple[str, Dict[str, Any]]]:
        raise NotImplementedError

    def _write(self, name: str, record_id: str, document: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get(self, collection: CollectionName, record_id: str) -> Optional[Dict[str, Any]]:
        name = collection_name(collection)
        with self._lock:
            document = self._read(name, record_id)
        if document is None:
            return None
        return {**document, "id": record_id}

    def get_all(self, collection: CollectionName) -> List[Dict[str, Any]]:
        name = collection_name(collection)
        with self._lock:
            rows = self._read_all(name)
        return [{**document, "id": record_id} for record_id, document in rows]

    def create(
        self,
        collection: CollectionName,
        document: Mapping[str, Any],
        record_id: Optional[str] = None,
    ) -> str:
        """Insert ``document`` and return its identifier.

        Raises:
            RecordStoreError: If ``record_id`` is already taken.
        """

        name = collection_name(collection)
        payload = {key: value for key, value in document.items() if key != "id"}
        with self._lock:
            new_id = record_id or uuid.uuid4().hex
            if self._read(name, new_id) is not None:
                raise RecordStoreError(f"Record already exists: {name}/{new_id}")
            self._write(name, new_id, payload)
        log.debug("Created %s/%s", name, new_id)
        self._notify(name)
        return new_id

    def update(self, collection: CollectionName, record_id: str, fields: Mapping[str, Any]) -> None:
        """Merge ``fields`` into an existing document.

        Raises:
            RecordStoreError: If the document does not exist.
        """

        name = collection_name(collection)
        with self._lock:
            current = self._read(name, record_id)
            if current is None:
                raise RecordStoreError(f"Record not found: {name}/{record_id}")
            current.update({key: value for key, value in fields.items() if key != "id"})
            self._write(name, record_id, current)
        self._notify(name)

    def conditional_update(self, path: str, expected: Any, new: Any) -> bool:
        """Set the field at ``path`` to ``new`` only if it currently equals ``expected``.

        A missing document or field compares equal to ``None``; when
        ``expected`` is ``None`` and the document is missing it is created with
        the single field. Returns ``True`` when the write happened.
        """

        name, record_id, field_name = split_path(path)
        with self._lock:
            current = self._read(name, record_id)
            observed = None if current is None else current.get(field_name)
            if observed != expected:
                log.debug("Conditional update lost on %s: expected %r, found %r", path, expected, observed)
                return False
            document = {} if current is None else current
            document[field_name] = new
            self._write(name, record_id, document)
        self._notify(name)
        return True

    def subscribe(self, collection: CollectionName, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for change snapshots of ``collection``.

        The callback receives the current snapshot immediately and again after
        every committed write. The returned callable removes the subscription.
        """

        name = collection_name(collection)
        with self._lock:
            self._subscribers.setdefault(name, []).append(callback)
        callback(self.get_all(name))

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(name, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def _notify(self, name: str) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(name, ()))
        if not callbacks:
            return
        snapshot = self.get_all(name)
        for callback in callbacks:
            callback(copy.deepcopy(snapshot))


class MemoryRecordStore(_BaseRecordStore):
    """Thread-safe in-memory store used by tests and embedded callers."""

    def __init__(self, initial: Optional[Mapping[str, Mapping[str, Mapping[str, Any]]]] = None) -> None:
        super().__init__()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for name, documents in (initial or {}).items():
            bucket = self._collections.setdefault(collection_name(name), {})
            for record_id, document in documents.items():
                bucket[record_id] = copy.deepcopy(dict(document))

    def _read(self, name: str, record_id: str) -> Optional[Dict[str, Any]]:
        document = self._collections.get(name, {}).get(record_id)
        return copy.deepcopy(document) if document is not None else None

    def _read_all(self, name: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [
            (record_id, copy.deepcopy(document))
            for record_id, document in self._collections.get(name, {}).items()
        ]

    def _write(self, name: str, record_id: str, document: Dict[str, Any]) -> None:
        self._collections.setdefault(name, {})[record_id] = copy.deepcopy(document)


class WorkbookRecordStore(_BaseRecordStore):
    """Record store persisting each collection on its own worksheet.

    Every sheet has the ``ID``/``Document`` header pair and stores one JSON
    document per row. Sheets are created lazily on first write. Changes live
    in the in-memory workbook until :func:`save_workbook` is called.
    """

    def __init__(self, workbook: Workbook) -> None:
        super().__init__()
        self.workbook = workbook

    def _sheet(self, name: str, *, create: bool):
        if name in self.workbook.sheetnames:
            return self.workbook[name]
        if not create:
            return None
        sheet = self.workbook.create_sheet(title=name)
        sheet.append(list(STORE_HEADERS))
        log.info("Created worksheet '%s'", name)
        return sheet

    @staticmethod
    def _decode(name: str, record_id: Any, raw: Any) -> Dict[str, Any]:
        try:
            document = json.loads(raw) if raw else {}
        except (TypeError, ValueError) as exc:
            raise RecordStoreError(f"Corrupt document in {name}/{record_id}: {exc}") from exc
        if not isinstance(document, dict):
            raise RecordStoreError(f"Corrupt document in {name}/{record_id}: not an object")
        return document

    def _read(self, name: str, record_id: str) -> Optional[Dict[str, Any]]:
        if self._sheet(name, create=False) is None:
            return None
        row_index = locate_row(self.workbook, name, STORE_HEADERS[0], record_id)
        if row_index is None:
            return None
        raw = self.workbook[name].cell(row=row_index, column=2).value
        return self._decode(name, record_id, raw)

    def _read_all(self, name: str) -> List[Tuple[str, Dict[str, Any]]]:
        sheet = self._sheet(name, create=False)
        if sheet is None:
            return []
        rows = []
        for raw in sheet.iter_rows(min_row=2, max_col=2, values_only=True):
            record_id, payload = raw[0], raw[1]
            if record_id is None:
                continue
            rows.append((str(record_id), self._decode(name, record_id, payload)))
        return rows

    def _write(self, name: str, record_id: str, document: Dict[str, Any]) -> None:
        sheet = self._sheet(name, create=True)
        try:
            payload = json.dumps(document, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise RecordStoreError(f"Document for {name}/{record_id} is not serialisable: {exc}") from exc
        row_index = locate_row(self.workbook, name, STORE_HEADERS[0], record_id)
        if row_index is None:
            sheet.append([record_id, payload])
        else:
            sheet.cell(row=row_index, column=2, value=payload)

"""Local record stores for documents, void events and numbering blocks.

Each store is one JSON file per environment (``data/<env>/<name>.json``)
holding a list of records. Every read-modify-write runs under an exclusive
file lock and writes are atomic (temp file + ``os.replace``), so the CLI and
the TUI can share the data directory.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from filelock import FileLock

from facturador import config as _config
from facturador.models.document import TaxDocument
from facturador.models.void_event import VoidEvent

logger = logging.getLogger(__name__)


class Record(Protocol):
    id: int | None

    def to_dict(self) -> dict[str, Any]: ...


R = TypeVar("R", bound=Record)

STORE_FILES = ("documents.json", "voids.json", "blocks.json")


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s → %s", path, backup)
    return backup


class JsonStore(Generic[R]):
    """A list of records of one type kept in a single locked JSON file."""

    def __init__(self, path: Path, from_dict: Callable[[dict[str, Any]], R]) -> None:
        self.path = path
        self._from_dict = from_dict
        self._lock = FileLock(path.with_suffix(".lock"))

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self.path)!r})"

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store's exclusive lock. Re-entrant within one thread."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            yield

    def _load(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            return json.loads(self.path.read_text())
        except (json.JSONDecodeError, ValueError):
            _backup_corrupt(self.path)
            return []

    def _save(self, entries: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
        os.replace(tmp, self.path)

    def all(self) -> list[R]:
        with self.locked():
            entries = self._load()
        return [self._from_dict(e) for e in entries]

    def get(self, record_id: int) -> R | None:
        with self.locked():
            entries = self._load()
        for e in entries:
            if e.get("id") == record_id:
                return self._from_dict(e)
        return None

    def find(self, predicate: Callable[[R], bool]) -> R | None:
        return next((r for r in self.all() if predicate(r)), None)

    def filter(self, predicate: Callable[[R], bool]) -> list[R]:
        return [r for r in self.all() if predicate(r)]

    def add(self, record: R) -> R:
        """Append *record*, assigning the next id. The record is updated in place."""
        with self.locked():
            entries = self._load()
            record.id = max((e.get("id") or 0 for e in entries), default=0) + 1
            entries.append(record.to_dict())
            self._save(entries)
        return record

    def save(self, record: R) -> R:
        """Replace the stored record with the same id (or add it when new)."""
        if record.id is None:
            return self.add(record)
        with self.locked():
            entries = self._load()
            for i, e in enumerate(entries):
                if e.get("id") == record.id:
                    entries[i] = record.to_dict()
                    break
            else:
                entries.append(record.to_dict())
            self._save(entries)
        return record


# --- Health check (read-only, no locks) ---


@dataclass
class StoreHealth:
    name: str
    ok: bool
    count: int
    corrupt_backups: list[str] = field(default_factory=list)


def check_store_health(env: str) -> list[StoreHealth]:
    """Probe every store file of *env* for corruption (read-only)."""
    env_dir = _config.get_env_dir(env)
    results: list[StoreHealth] = []
    for name in STORE_FILES:
        path = env_dir / name
        ok = True
        count = 0
        if path.exists():
            try:
                count = len(json.loads(path.read_text()))
            except (json.JSONDecodeError, ValueError, TypeError):
                ok = False
        if env_dir.exists():
            backups = sorted(str(p) for p in env_dir.glob(f"{name}.corrupt.*"))
        else:
            backups = []
        results.append(StoreHealth(name=name, ok=ok, count=count, corrupt_backups=backups))
    return results


def document_store(env: str) -> JsonStore[TaxDocument]:
    return JsonStore(_config.get_env_dir(env) / "documents.json", TaxDocument.from_dict)


def void_store(env: str) -> JsonStore[VoidEvent]:
    return JsonStore(_config.get_env_dir(env) / "voids.json", VoidEvent.from_dict)

"""
Exports ``SchemaStore``, the append-only record store shared by the nodes of
a cluster, and ``SchemaRecord``, the entity it holds.
"""

from __future__ import annotations

import os
import pickle
import threading
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console

from .errors import DuplicateIdError, SchemaNotFoundError, SchemaRegistryError

__all__ = ["SchemaStore", "SchemaRecord"]

console = Console()


@dataclass(frozen=True)
class SchemaRecord:
    subject: str
    version: int
    id: int
    schema: str


class SchemaStore:
    def __init__(self, path: str | Path | None = None):
        """
        Initialize the store and load existing records from disk.

        Note:
            The same id may appear under several subjects when an identical
            schema is registered more than once; an id is never bound to two
            different schema texts.

        :param path: Optional pickle file persisting the records.
        """
        self.path: Path | None = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._records: list[SchemaRecord] = []
        self._by_id: dict[int, SchemaRecord] = {}
        self._by_subject: dict[str, dict[int, SchemaRecord]] = {}
        for record in self._load():
            self._index(record)

    # ---------------------------------------------------------
    # Load / Save
    # ---------------------------------------------------------
    def _load(self) -> list[SchemaRecord]:
        """
        Load persisted records from disk.

        Note:
            Only ``list[SchemaRecord]`` structures are accepted. Invalid or
            unreadable files result in an empty store.

        :return: Loaded records or an empty list on failure.
        """
        if self.path is None or not os.path.exists(self.path):
            return []

        try:
            with open(self.path, "rb") as f:
                data = pickle.load(f)
                if isinstance(data, list) and all(isinstance(r, SchemaRecord) for r in data):
                    return data
                console.log(f"[SchemaStore] Invalid store structure, resetting: {type(data)}")
        except (pickle.UnpicklingError, EOFError) as e:
            console.log(f"[SchemaStore] Failed to unpickle {self.path}: {e}")
        except OSError as e:
            console.log(f"[SchemaStore] OS error while reading {self.path}: {e}")

        return []

    def _save(self) -> None:
        if self.path is None:
            return
        with open(self.path, "wb") as f:
            pickle.dump(self._records, f)  # noqa

    def _index(self, record: SchemaRecord) -> None:
        self._records.append(record)
        self._by_id.setdefault(record.id, record)
        self._by_subject.setdefault(record.subject, {})[record.version] = record

    # ---------------------------------------------------------
    # Writes
    # ---------------------------------------------------------
    def append(self, record: SchemaRecord) -> None:
        """
        Durably append a record.

        :param record: Record to store.
        :raises DuplicateIdError: If the id is bound to a different schema.
        :raises SchemaRegistryError: If the subject already has this version.
        :raises OSError: If the record could not be persisted; the store is
            left unchanged.
        """
        with self._lock:
            existing = self._by_id.get(record.id)
            if existing is not None and existing.schema != record.schema:
                raise DuplicateIdError(f"id {record.id} already assigned to another schema")
            if record.version in self._by_subject.get(record.subject, {}):
                raise SchemaRegistryError(f"{record.subject} already has version {record.version}")
            self._index(record)
            try:
                self._save()
            except OSError:
                self._records.pop()
                self._by_subject[record.subject].pop(record.version)
                if existing is None:
                    del self._by_id[record.id]
                raise

    # ---------------------------------------------------------
    # Reads
    # ---------------------------------------------------------
    def max_id(self) -> int:
        """
        Highest id ever durably written.

        :return: The maximum id, or ``-1`` for an empty store.
        """
        with self._lock:
            return max(self._by_id, default=-1)

    def get_by_id(self, schema_id: int) -> SchemaRecord:
        with self._lock:
            record = self._by_id.get(schema_id)
        if record is None:
            raise SchemaNotFoundError(f"schema id {schema_id} not found")
        return record

    def get_version(self, subject: str, version: int) -> SchemaRecord:
        """
        Fetch one version of a subject.

        :param subject: Subject name.
        :param version: Version number, or ``-1`` for the latest.
        :raises SchemaNotFoundError: If the subject or version is unknown.
        """
        with self._lock:
            versions = self._by_subject.get(subject, {})
            if version == -1 and versions:
                version = max(versions)
            record = versions.get(version)
        if record is None:
            raise SchemaNotFoundError(f"subject {subject!r} has no version {version}")
        return record

    def latest_version(self, subject: str) -> int:
        with self._lock:
            return max(self._by_subject.get(subject, {}), default=0)

    def versions(self, subject: str) -> list[int]:
        with self._lock:
            return sorted(self._by_subject.get(subject, {}))

    def lookup(self, subject: str, schema: str) -> SchemaRecord | None:
        with self._lock:
            for record in self._by_subject.get(subject, {}).values():
                if record.schema == schema:
                    return record
        return None

    def find_schema(self, schema: str) -> SchemaRecord | None:
        """
        Find a record holding ``schema`` under any subject.

        :return: The record with the lowest id, or ``None``.
        """
        with self._lock:
            matches = [r for r in self._records if r.schema == schema]
        return min(matches, key=lambda r: r.id, default=None)

    @property
    def records(self) -> list[SchemaRecord]:
        with self._lock:
            return list(self._records)

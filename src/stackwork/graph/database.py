"""Persistent record of the file stamps each target was last built from."""

from __future__ import annotations

import threading
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import cbor2

from stackwork.fsutil import atomic_write_bytes

Stamps = dict[str, int]


class GraphDatabaseWarning(UserWarning):
    """Warning raised when the stamp database cannot be decoded."""


@dataclass(slots=True)
class GraphDatabase:
    path: Path
    _entries: dict[str, Stamps] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def load(cls, path: str | Path) -> GraphDatabase:
        database = cls(path=Path(path))
        try:
            raw = database.path.read_bytes()
        except FileNotFoundError:
            return database
        try:
            payload = cbor2.loads(raw)
        except cbor2.CBORDecodeError:
            payload = None
        entries = _entries_from(payload)
        if entries is None:
            warnings.warn(
                f"Ignoring unreadable build graph database at {database.path}.",
                GraphDatabaseWarning,
                stacklevel=2,
            )
            return database
        database._entries = entries
        return database

    def stamps_for(self, target: str) -> Stamps | None:
        with self._lock:
            stamps = self._entries.get(target)
            return dict(stamps) if stamps is not None else None

    def record(self, target: str, stamps: Mapping[str, int]) -> None:
        with self._lock:
            self._entries[target] = dict(stamps)

    def forget(self, target: str) -> None:
        with self._lock:
            self._entries.pop(target, None)

    def save(self) -> Path:
        with self._lock:
            payload = {"targets": {key: dict(value) for key, value in self._entries.items()}}
        return atomic_write_bytes(self.path, cbor2.dumps(payload, canonical=True))


def _entries_from(payload: object) -> dict[str, Stamps] | None:
    if not isinstance(payload, dict):
        return None
    targets = payload.get("targets")
    if not isinstance(targets, dict):
        return None
    entries: dict[str, Stamps] = {}
    for key, stamps in targets.items():
        if not isinstance(key, str) or not isinstance(stamps, dict):
            return None
        if not all(isinstance(p, str) and isinstance(s, int) for p, s in stamps.items()):
            return None
        entries[key] = dict(stamps)
    return entries

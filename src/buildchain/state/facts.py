from __future__ import annotations

import json
import os
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path


class StateError(RuntimeError):
    """Raised when persisted state cannot be read or written."""


class FactStore(ABC):
    """Per-identity key/value facts."""

    @abstractmethod
    def get(self, identity: str, key: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def set(self, identity: str, key: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, identity: str, key: str) -> None:
        raise NotImplementedError


class MemoryFactStore(FactStore):
    def __init__(self) -> None:
        self._facts: dict[tuple[str, str], str] = {}

    def get(self, identity: str, key: str) -> str | None:
        return self._facts.get((identity, key))

    def set(self, identity: str, key: str, value: str) -> None:
        self._facts[(identity, key)] = value

    def delete(self, identity: str, key: str) -> None:
        self._facts.pop((identity, key), None)


class JsonFactStore(FactStore):
    """All facts in one JSON document, ``{identity: {key: value}}``.

    Writes go through a lock file and an atomic rename so that two CLI
    processes never interleave partial documents.
    """

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.path = path
        self.lock_file = path.with_name(path.name + ".lock")
        self.lock_timeout_seconds = lock_timeout_seconds

    @contextmanager
    def _lock(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateError(
                        f"Timed out waiting for fact store lock {self.lock_file}"
                    ) from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read(self) -> dict[str, dict[str, str]]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"Fact store {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise StateError(f"Fact store {self.path} must contain a JSON object")
        return payload

    def _write(self, payload: dict[str, dict[str, str]]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        tmp_path.replace(self.path)

    def get(self, identity: str, key: str) -> str | None:
        facts = self._read().get(identity, {})
        value = facts.get(key) if isinstance(facts, dict) else None
        return value if isinstance(value, str) else None

    def set(self, identity: str, key: str, value: str) -> None:
        with self._lock():
            payload = self._read()
            facts = payload.get(identity)
            if not isinstance(facts, dict):
                facts = {}
            facts[key] = value
            payload[identity] = facts
            self._write(payload)

    def delete(self, identity: str, key: str) -> None:
        with self._lock():
            payload = self._read()
            facts = payload.get(identity)
            if not isinstance(facts, dict) or key not in facts:
                return
            del facts[key]
            if facts:
                payload[identity] = facts
            else:
                payload.pop(identity)
            self._write(payload)

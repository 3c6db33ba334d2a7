from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from buildchain.state.facts import FactStore, StateError

DISCOVERY_KEY = "pending_discovery"
PENDING_BUILD_KEY = "pending_build"
TRANSCRIPT_DIR = "discovery"


def _parse_timestamp(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        return 0


@dataclass(frozen=True, slots=True)
class SessionMarker:
    created_at: int
    identity: str
    round: int

    def encode(self) -> str:
        return f"{self.created_at}|{self.identity}|{self.round}"

    @classmethod
    def decode(cls, value: str) -> SessionMarker:
        # An unreadable timestamp decodes as 0 so the session reads as expired.
        parts = value.split("|")
        created_at = _parse_timestamp(parts[0])
        identity = parts[1] if len(parts) > 1 else ""
        round_number = _parse_timestamp(parts[2]) if len(parts) > 2 else 1
        return cls(created_at=created_at, identity=identity, round=round_number)


@dataclass(frozen=True, slots=True)
class PendingBuild:
    created_at: int
    brief: str


def validate_identity(identity: str) -> None:
    if (
        not identity
        or "/" in identity
        or "\\" in identity
        or ".." in identity
        or identity.startswith(".")
    ):
        raise StateError(f"invalid identity '{identity}'")


class SessionStore:
    """Intake presence markers, transcripts, and pending builds for each identity.

    The marker lives in the fact store; the transcript is a plain file under
    ``<data_dir>/discovery/``. :meth:`teardown` removes both.
    """

    def __init__(self, facts: FactStore, data_dir: Path) -> None:
        self.facts = facts
        self.data_dir = data_dir

    def transcript_path(self, identity: str) -> Path:
        validate_identity(identity)
        return self.data_dir / TRANSCRIPT_DIR / f"{identity}.md"

    def get_marker(self, identity: str) -> SessionMarker | None:
        value = self.facts.get(identity, DISCOVERY_KEY)
        if value is None:
            return None
        return SessionMarker.decode(value)

    def save_marker(self, marker: SessionMarker) -> None:
        self.facts.set(marker.identity, DISCOVERY_KEY, marker.encode())

    def read_transcript(self, identity: str) -> str:
        path = self.transcript_path(identity)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as exc:
            raise StateError(f"failed to read transcript {path}: {exc}") from exc

    def write_transcript(self, identity: str, text: str) -> None:
        path = self.transcript_path(identity)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise StateError(f"failed to write transcript {path}: {exc}") from exc

    def teardown(self, identity: str) -> None:
        self.facts.delete(identity, DISCOVERY_KEY)
        self.transcript_path(identity).unlink(missing_ok=True)

    def get_pending_build(self, identity: str) -> PendingBuild | None:
        value = self.facts.get(identity, PENDING_BUILD_KEY)
        if value is None:
            return None
        raw_ts, _, brief = value.partition("|")
        return PendingBuild(created_at=_parse_timestamp(raw_ts), brief=brief)

    def save_pending_build(self, identity: str, pending: PendingBuild) -> None:
        self.facts.set(identity, PENDING_BUILD_KEY, f"{pending.created_at}|{pending.brief}")

    def clear_pending_build(self, identity: str) -> None:
        self.facts.delete(identity, PENDING_BUILD_KEY)

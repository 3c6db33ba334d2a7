"""Multi-round discovery before a build, and the confirmation gate after it.

A request either goes straight to ``PROPOSED`` or opens a questioning session
that lasts at most ``max_rounds`` invocations. The session is two records:
a presence marker in the fact store and a transcript file. Every terminal
transition removes both. A proposed brief waits in the fact store until the
confirmation gate sees a yes, a no, or the TTL runs out.
"""

from __future__ import annotations

import enum
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from buildchain.invokers.base import CapabilityInvoker, InvocationError
from buildchain.keywords import is_cancellation, is_confirmation
from buildchain.parsing import (
    COMPLETE_MARKER,
    QUESTIONS_MARKER,
    ROUND_HEADER,
    IntakeKind,
    parse_intake_output,
    parse_round,
)
from buildchain.state.sessions import (
    PendingBuild,
    SessionMarker,
    SessionStore,
    validate_identity,
)
from buildchain.workspace import GuardRegistry, WorkspaceError, materialize_single

DEFAULT_TTL_SECONDS = 1800
DEFAULT_MAX_ROUNDS = 3

START_PROMPT = """\
Build request:
{request}

If the request is specific enough to build, output {complete} followed by the
refined request. Otherwise output {questions} followed by 2-5 short numbered
questions.
"""

ROUND_PROMPT = """\
Discovery round {round}. Continue the conversation.

Accumulated context:
{transcript}

If you have enough information, output {complete} followed by the refined
request. Otherwise output {questions} followed by 2-5 short numbered questions.
"""

FINAL_ROUND_PROMPT = """\
FINAL ROUND. You MUST output {complete} now, followed by the refined request.

Accumulated context:
{transcript}
"""

REVISION_PROMPT = """\
The requester wants changes to the proposed build.

Previous proposal and feedback:
{context}

Update the proposal based on the feedback. Output {complete} followed by the
updated request.
"""


class IntakeStatus(enum.Enum):
    QUESTIONS = "questions"
    PROPOSED = "proposed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    CONFLICT = "conflict"
    NO_SESSION = "no_session"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class IntakeOutcome:
    status: IntakeStatus
    message: str = ""
    round: int = 0
    brief: str | None = None


class ConfirmationStatus(enum.Enum):
    EXECUTING = "executing"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    AWAITING = "awaiting"


@dataclass(frozen=True, slots=True)
class ConfirmationOutcome:
    status: ConfirmationStatus
    brief: str | None = None


def is_expired(created_at: int, now: int, ttl_seconds: int) -> bool:
    """A session created at ``T`` is still live at exactly ``T + ttl``."""
    return now - created_at > ttl_seconds


def _strip_round_header(transcript: str) -> str:
    lines = transcript.splitlines()
    for index, line in enumerate(lines):
        if line.startswith(ROUND_HEADER):
            del lines[index]
            break
    return "\n".join(lines)


class IntakeSession:
    def __init__(
        self,
        invoker: CapabilityInvoker,
        sessions: SessionStore,
        workspace_dir: Path,
        *,
        role: str,
        role_content: str,
        model: str,
        max_turns: int | None = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        clock: Callable[[], float] = time.time,
        registry: GuardRegistry | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.invoker = invoker
        self.sessions = sessions
        self.workspace_dir = workspace_dir
        self.role = role
        self.role_content = role_content
        self.model = model
        self.max_turns = max_turns
        self.ttl_seconds = ttl_seconds
        self.max_rounds = max(1, max_rounds)
        self.clock = clock
        self.registry = registry
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(payload)

    def _now(self) -> int:
        return int(self.clock())

    def has_session(self, identity: str) -> bool:
        return self.sessions.get_marker(identity) is not None

    async def _invoke(self, prompt: str) -> str:
        with materialize_single(
            self.workspace_dir, self.role, self.role_content, registry=self.registry
        ):
            return await self.invoker.invoke(
                self.role, prompt, model=self.model, max_turns=self.max_turns
            )

    def _propose(self, identity: str, brief: str, round_number: int) -> IntakeOutcome:
        pending = PendingBuild(created_at=self._now(), brief=brief)
        self.sessions.save_pending_build(identity, pending)
        self.sessions.teardown(identity)
        self._emit({"event": "intake_proposed", "identity": identity, "round": round_number})
        return IntakeOutcome(IntakeStatus.PROPOSED, message=brief, round=round_number, brief=brief)

    async def start(self, identity: str, request: str) -> IntakeOutcome:
        validate_identity(identity)
        pending = self.sessions.get_pending_build(identity)
        if pending is not None:
            if not is_expired(pending.created_at, self._now(), self.ttl_seconds):
                return IntakeOutcome(
                    IntakeStatus.CONFLICT,
                    message="A proposed build is waiting for confirmation. Reply to it first.",
                    brief=pending.brief,
                )
            self.sessions.clear_pending_build(identity)
        marker = self.sessions.get_marker(identity)
        if marker is not None:
            if not is_expired(marker.created_at, self._now(), self.ttl_seconds):
                return IntakeOutcome(
                    IntakeStatus.CONFLICT,
                    message="A discovery session is already active. Answer it or cancel it first.",
                    round=marker.round,
                )
            self.sessions.teardown(identity)
            self._emit({"event": "intake_expired_cleanup", "identity": identity})

        prompt = START_PROMPT.format(
            request=request, complete=COMPLETE_MARKER, questions=QUESTIONS_MARKER
        )
        try:
            output = await self._invoke(prompt)
        except (InvocationError, WorkspaceError) as exc:
            self._emit({"event": "intake_failed", "identity": identity, "error": str(exc)})
            return IntakeOutcome(IntakeStatus.FAILED, message=f"Discovery could not start: {exc}")

        parsed = parse_intake_output(output)
        if parsed.kind is IntakeKind.BRIEF or self.max_rounds == 1:
            return self._propose(identity, parsed.text or request, 1)

        created_at = self._now()
        transcript = f"ROUND: 1\nDESCRIPTION: {request}\n\nQUESTIONS:\n{parsed.text}"
        self.sessions.write_transcript(identity, transcript)
        self.sessions.save_marker(SessionMarker(created_at=created_at, identity=identity, round=1))
        self._emit({"event": "intake_questions", "identity": identity, "round": 1})
        return IntakeOutcome(IntakeStatus.QUESTIONS, message=parsed.text, round=1)

    async def handle_message(self, identity: str, text: str) -> IntakeOutcome:
        marker = self.sessions.get_marker(identity)
        if marker is None:
            return IntakeOutcome(IntakeStatus.NO_SESSION)

        if is_expired(marker.created_at, self._now(), self.ttl_seconds):
            self.sessions.teardown(identity)
            self._emit({"event": "intake_expired", "identity": identity})
            return IntakeOutcome(
                IntakeStatus.EXPIRED,
                message="The discovery session expired. Start a new request.",
                round=marker.round,
            )

        if is_cancellation(text):
            self.sessions.teardown(identity)
            self._emit({"event": "intake_cancelled", "identity": identity})
            return IntakeOutcome(
                IntakeStatus.CANCELLED, message="Discovery cancelled.", round=marker.round
            )

        transcript = self.sessions.read_transcript(identity)
        current_round = parse_round(transcript) or marker.round
        next_round = current_round + 1
        updated = (
            f"ROUND: {next_round}\n{_strip_round_header(transcript)}"
            f"\n\nUSER ANSWER (round {current_round}):\n{text}"
        )
        self.sessions.write_transcript(identity, updated)
        self.sessions.save_marker(
            SessionMarker(created_at=marker.created_at, identity=identity, round=next_round)
        )

        final_round = next_round >= self.max_rounds
        template = FINAL_ROUND_PROMPT if final_round else ROUND_PROMPT
        prompt = template.format(
            round=next_round,
            transcript=updated,
            complete=COMPLETE_MARKER,
            questions=QUESTIONS_MARKER,
        )
        try:
            output = await self._invoke(prompt)
        except (InvocationError, WorkspaceError) as exc:
            self.sessions.teardown(identity)
            self._emit({"event": "intake_failed", "identity": identity, "error": str(exc)})
            return IntakeOutcome(
                IntakeStatus.FAILED,
                message=f"Discovery failed in round {next_round}: {exc}",
                round=next_round,
            )

        parsed = parse_intake_output(output)
        if parsed.kind is IntakeKind.BRIEF or final_round:
            brief = parsed.text or output.strip()
            if final_round and parsed.kind is IntakeKind.QUESTIONS:
                self._emit({"event": "intake_forced_complete", "identity": identity})
                brief = f"{updated}\n\nOPEN QUESTIONS:\n{parsed.text}"
            return self._propose(identity, brief, next_round)

        self.sessions.write_transcript(identity, f"{updated}\n\nQUESTIONS:\n{parsed.text}")
        self._emit({"event": "intake_questions", "identity": identity, "round": next_round})
        return IntakeOutcome(IntakeStatus.QUESTIONS, message=parsed.text, round=next_round)

    async def revise(self, identity: str, text: str) -> IntakeOutcome:
        """Rework a proposed brief with the requester's feedback.

        The pending build keeps its original creation time. When the intake
        role fails, the previous proposal stays in place.
        """
        pending = self.sessions.get_pending_build(identity)
        if pending is None:
            return IntakeOutcome(IntakeStatus.NO_SESSION)
        if is_expired(pending.created_at, self._now(), self.ttl_seconds):
            self.sessions.clear_pending_build(identity)
            return IntakeOutcome(
                IntakeStatus.EXPIRED, message="The proposed build expired. Start a new request."
            )

        context = f"{pending.brief}\n\nUSER MODIFICATION:\n{text}"
        prompt = REVISION_PROMPT.format(context=context, complete=COMPLETE_MARKER)
        try:
            output = await self._invoke(prompt)
        except (InvocationError, WorkspaceError) as exc:
            self._emit({"event": "intake_revision_failed", "identity": identity, "error": str(exc)})
            return IntakeOutcome(
                IntakeStatus.FAILED,
                message=f"Could not revise the proposed build: {exc}",
                brief=pending.brief,
            )

        parsed = parse_intake_output(output)
        brief = parsed.text or context
        if parsed.kind is IntakeKind.QUESTIONS:
            brief = f"{context}\n\nOPEN QUESTIONS:\n{parsed.text}"
        self.sessions.save_pending_build(
            identity, PendingBuild(created_at=pending.created_at, brief=brief)
        )
        self._emit({"event": "intake_revised", "identity": identity})
        return IntakeOutcome(IntakeStatus.PROPOSED, message=brief, brief=brief)


class BuildConfirmationGate:
    """Holds a proposed brief until the requester confirms or cancels it."""

    def __init__(
        self,
        sessions: SessionStore,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sessions = sessions
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def has_pending(self, identity: str) -> bool:
        return self.sessions.get_pending_build(identity) is not None

    def handle(self, identity: str, text: str) -> ConfirmationOutcome | None:
        pending = self.sessions.get_pending_build(identity)
        if pending is None:
            return None
        if is_expired(pending.created_at, int(self.clock()), self.ttl_seconds):
            self.sessions.clear_pending_build(identity)
            return ConfirmationOutcome(ConfirmationStatus.EXPIRED)
        if is_confirmation(text):
            self.sessions.clear_pending_build(identity)
            return ConfirmationOutcome(ConfirmationStatus.EXECUTING, brief=pending.brief)
        if is_cancellation(text):
            self.sessions.clear_pending_build(identity)
            return ConfirmationOutcome(ConfirmationStatus.CANCELLED)
        return ConfirmationOutcome(ConfirmationStatus.AWAITING, brief=pending.brief)

"""
Per-session state, the single-flight turn guard and the report store.

Sessions live in process memory. Completed reports are additionally handed to
a `ReportRepository`, the seam where an external datastore plugs in.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol
from uuid import uuid4

from loguru import logger

from .config import get_float
from .models import (
    AnalysisStatus,
    BuyerProfile,
    ComplianceViolation,
    SessionPhase,
    SessionReport,
    TranscriptEntry,
)


class RoleplayError(Exception):
    """Base class for errors raised by the session engine."""


class InvalidPersonaError(RoleplayError):
    pass


class SessionNotFoundError(RoleplayError):
    pass


class SessionAccessError(RoleplayError):
    pass


class DuplicateUtteranceError(RoleplayError):
    pass


class AnalysisInProgressError(RoleplayError):
    pass


class PersistenceError(RoleplayError):
    pass


def _utterance_key(text: str) -> str:
    return " ".join((text or "").split()).lower()


@dataclass
class SessionState:
    session_id: str
    user_id: str
    persona: BuyerProfile
    difficulty: str = "beginner"
    duration_minutes: int = 30
    created_at: float = field(default_factory=time.time)
    transcript: List[TranscriptEntry] = field(default_factory=list)
    current_phase: SessionPhase = SessionPhase.RAPPORT
    # transcript length when the current phase began
    phase_start: int = 0
    violations: List[ComplianceViolation] = field(default_factory=list)
    analysis_status: AnalysisStatus = "pending"
    analysis_started_at: Optional[float] = None
    # last report write failure, cleared when analysis restarts
    analysis_error: Optional[str] = None
    ended_at: Optional[float] = None
    report: Optional[SessionReport] = None

    def __post_init__(self) -> None:
        self._guard = threading.Lock()
        self._turn_lock = threading.Lock()
        self._in_flight: Dict[str, str] = {}
        self._last_processed: Dict[str, str] = {}

    @property
    def entries_in_phase(self) -> int:
        return len(self.transcript) - self.phase_start

    def append(self, entry: TranscriptEntry) -> int:
        self.transcript.append(entry)
        return len(self.transcript) - 1

    def enter_phase(self, phase: SessionPhase) -> None:
        self.current_phase = phase
        self.phase_start = len(self.transcript)

    def replace_transcript(self, entries: List[TranscriptEntry]) -> None:
        """Swap in a complete transcript once no turn is mid-flight."""
        with self._turn_lock:
            self.transcript = list(entries)
            self.phase_start = min(self.phase_start, len(self.transcript))

    @contextmanager
    def single_flight(self, speaker: str, text: str) -> Iterator[None]:
        """
        Admit one utterance at a time. An utterance identical to the one in
        flight, or to the last one processed for the same speaker, is
        rejected; distinct utterances wait their turn.
        """
        key = _utterance_key(text)
        with self._guard:
            if self._in_flight.get(speaker) == key or self._last_processed.get(speaker) == key:
                raise DuplicateUtteranceError(f"Duplicate {speaker} utterance dropped.")
            self._in_flight[speaker] = key

        completed = False
        try:
            with self._turn_lock:
                yield
                completed = True
        finally:
            with self._guard:
                if self._in_flight.get(speaker) == key:
                    del self._in_flight[speaker]
                if completed:
                    self._last_processed[speaker] = key


class ReportRepository(Protocol):
    """Durable storage for completed session reports."""

    def save(self, report: SessionReport) -> None:
        ...

    def get(self, session_id: str) -> Optional[SessionReport]:
        ...


class InMemoryReportRepository:
    def __init__(self) -> None:
        self._reports: Dict[str, SessionReport] = {}
        self._lock = threading.Lock()

    def save(self, report: SessionReport) -> None:
        with self._lock:
            self._reports[report.session_id] = report

    def get(self, session_id: str) -> Optional[SessionReport]:
        with self._lock:
            return self._reports.get(session_id)


class SessionStore:
    """
    Thread-safe registry of live sessions.
    """

    def __init__(
        self,
        repository: Optional[ReportRepository] = None,
        retry_after_seconds: Optional[float] = None,
    ) -> None:
        self._sessions: Dict[str, SessionState] = {}
        self._lock = threading.Lock()
        self.repository: ReportRepository = repository or InMemoryReportRepository()
        self.retry_after_seconds = (
            retry_after_seconds
            if retry_after_seconds is not None
            else get_float("analysis", "retry_after_seconds", 30.0)
        )

    def create(
        self,
        user_id: str,
        persona: BuyerProfile,
        difficulty: str = "beginner",
        duration_minutes: int = 30,
        session_id: Optional[str] = None,
    ) -> SessionState:
        state = SessionState(
            session_id=session_id or str(uuid4()),
            user_id=user_id,
            persona=persona,
            difficulty=difficulty,
            duration_minutes=duration_minutes,
        )
        with self._lock:
            self._sessions[state.session_id] = state
        logger.info(f"Session {state.session_id} created ({persona.personality}, {difficulty})")
        return state

    def get(self, session_id: str) -> SessionState:
        with self._lock:
            state = self._sessions.get(session_id)
        if state is None:
            raise SessionNotFoundError(f"Session {session_id} not found.")
        return state

    def get_for_user(self, session_id: str, user_id: str) -> SessionState:
        state = self.get(session_id)
        if state.user_id != user_id:
            raise SessionAccessError(f"Session {session_id} belongs to another user.")
        return state

    def mark_processing(self, session_id: str) -> SessionState:
        state = self.get(session_id)
        with self._lock:
            state.analysis_status = "processing"
            state.analysis_started_at = time.time()
            state.analysis_error = None
        return state

    def save_report(self, report: SessionReport) -> None:
        """
        Persist first, then publish. A failed write leaves the session's
        previous report and status untouched.
        """
        state = self.get(report.session_id)
        try:
            self.repository.save(report)
        except Exception as e:
            raise PersistenceError(f"Failed to save report for {report.session_id}: {e}") from e
        with self._lock:
            state.report = report
            state.analysis_status = "completed"

    def mark_failed(self, session_id: str, error: Optional[str] = None) -> None:
        state = self.get(session_id)
        with self._lock:
            state.analysis_status = "failed"
            state.analysis_error = error

    def can_retry(self, session_id: str, now: Optional[float] = None) -> bool:
        state = self.get(session_id)
        if state.report is not None or state.analysis_status in ("completed", "failed"):
            return True
        if state.analysis_status != "processing":
            return False
        started = state.analysis_started_at or 0.0
        return ((now if now is not None else time.time()) - started) > self.retry_after_seconds

    def ensure_can_retry(self, session_id: str, now: Optional[float] = None) -> SessionState:
        if not self.can_retry(session_id, now):
            raise AnalysisInProgressError(
                f"Analysis for {session_id} is still running; retry later."
            )
        return self.get(session_id)

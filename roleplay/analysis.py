from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Union

from loguru import logger

from .compliance import ComplianceEngine, compliance_pass, merge
from .config import get_float, get_int, get_max_tokens_for_agent, get_model_for_agent, get_temperature_for_agent
from .json_utils import coerce_json_object
from .llm import achat_completion
from .models import (
    BuyerProfile,
    CoachTurn,
    ComplianceViolation,
    DefaultResult,
    HeuristicResult,
    QualitativeResult,
    SessionFeedback,
    SessionReport,
    SkillGrade,
    TranscriptEntry,
)
from .prompts import read_prompt
from .scoring import ScoringEngine
from .sessions import PersistenceError, SessionStore
from .tables import DEFAULT_SCORING_TABLES, ScoringTables, grade_to_score


_DEFAULT_SKILLS = (
    ("Building Rapport", "B", "Review your opening approach"),
    ("Discovery Questions", "B", "Continue asking deep questions"),
    ("Money Qualification", "B", "Practice budget conversations"),
    ("Objection Handling", "B", "Keep working on responses"),
    ("Frame Control", "B", "Maintain conversation leadership"),
    ("Closing Skills", "B", "Work on asking for commitment"),
    ("Compliance", "A-", "No major issues detected"),
)


def default_feedback() -> SessionFeedback:
    """
    Fixed feedback used whenever the qualitative pass cannot produce one.
    Identical on every call.
    """
    return SessionFeedback(
        overall_grade="B",
        overall_summary=(
            "Session completed. Detailed analysis was unable to process due to technical "
            "issues. Please review your transcript manually or try another session."
        ),
        skill_grades=[
            SkillGrade(skill=skill, grade=grade, notes=notes, trend="stable")
            for skill, grade, notes in _DEFAULT_SKILLS
        ],
        strengths=["Completed the roleplay session", "Engaged in conversation with the buyer"],
        areas_for_improvement=[
            "Continue practicing to build confidence",
            "Review transcript for specific improvement areas",
        ],
        compliance_issues=[],
        key_moments=[],
        next_session_focus="Focus on asking more discovery questions and practice closing techniques.",
    )


def format_transcript(transcript: Sequence[TranscriptEntry]) -> str:
    lines = []
    for index, entry in enumerate(transcript):
        seconds = int(entry.timestamp)
        speaker = "AGENT" if entry.is_trainee else "BUYER"
        lines.append(f"[{index}] {seconds // 60}:{seconds % 60:02d} - {speaker}: {entry.content}")
    return "\n".join(lines)


class FeedbackAnalyzer(Protocol):
    async def analyze(
        self,
        transcript: Sequence[TranscriptEntry],
        persona: Optional[BuyerProfile],
        difficulty: str,
        duration_minutes: int,
    ) -> SessionFeedback:
        ...


@dataclass
class QualitativeAnalyzer:
    """
    Asks a chat model for narrative SessionFeedback over the full transcript.
    Raises on transport, parse or validation failure; the orchestrator
    decides what to do about it.
    """

    model: str = get_model_for_agent("session_analysis", "openai/gpt-4o")
    max_tokens: int = get_max_tokens_for_agent("session_analysis", 2000)
    temperature: float = get_temperature_for_agent("session_analysis", 0.5)

    def build_prompt(
        self,
        transcript: Sequence[TranscriptEntry],
        persona: Optional[BuyerProfile],
        difficulty: str,
        duration_minutes: int,
    ) -> str:
        experience = persona.experience_level if persona else "first_time"
        emotional = persona.emotional_state if persona else "nervous"
        resistance = persona.resistance_level if persona else "medium"
        return (
            "## SESSION DETAILS\n\n"
            f"**Difficulty Level:** {difficulty}\n"
            f"**Duration:** {duration_minutes} minutes\n"
            "**Buyer Profile:**\n"
            f"- Experience: {experience}\n"
            f"- Emotional State: {emotional}\n"
            f"- Resistance Level: {resistance}\n\n"
            "## FULL TRANSCRIPT\n\n"
            f"{format_transcript(transcript)}\n\n"
            "---\n\n"
            "Analyze this complete session and provide comprehensive feedback. Return JSON only."
        )

    async def analyze(
        self,
        transcript: Sequence[TranscriptEntry],
        persona: Optional[BuyerProfile],
        difficulty: str,
        duration_minutes: int,
    ) -> SessionFeedback:
        content = await achat_completion(
            model=self.model,
            messages=[
                {"role": "system", "content": read_prompt("session_analysis", "system_prompt", "")},
                {
                    "role": "user",
                    "content": self.build_prompt(transcript, persona, difficulty, duration_minutes),
                },
            ],
            response_format={"type": "json_object"},
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return SessionFeedback.model_validate(coerce_json_object(content))


@dataclass
class SessionAnalysisOrchestrator:
    """
    Turns a finished transcript into one SessionReport: heuristic scoring,
    the time-boxed qualitative pass and the merged compliance record.
    """

    analyzer: Optional[FeedbackAnalyzer] = field(default_factory=QualitativeAnalyzer)
    scoring: ScoringEngine = field(default_factory=ScoringEngine)
    compliance: ComplianceEngine = field(default_factory=ComplianceEngine)
    tables: ScoringTables = field(default=DEFAULT_SCORING_TABLES)
    timeout_seconds: float = get_float("analysis", "timeout_seconds", 25.0)
    min_entries: int = get_int("analysis", "min_entries", 2)
    default_duration_minutes: int = get_int("analysis", "default_duration_minutes", 30)

    async def qualitative(
        self,
        session_id: str,
        transcript: Sequence[TranscriptEntry],
        persona: Optional[BuyerProfile],
        difficulty: str,
        duration_minutes: int,
    ) -> Union[QualitativeResult, DefaultResult]:
        if self.analyzer is None:
            return DefaultResult(feedback=default_feedback(), reason="no analyzer configured")

        started = time.monotonic()
        try:
            feedback = await asyncio.wait_for(
                self.analyzer.analyze(transcript, persona, difficulty, duration_minutes),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Session {session_id}: qualitative analysis timed out after {self.timeout_seconds}s"
            )
            return DefaultResult(feedback=default_feedback(), reason="timeout")
        except Exception as e:
            elapsed = int((time.monotonic() - started) * 1000)
            logger.warning(f"Session {session_id}: qualitative analysis failed after {elapsed}ms: {e}")
            return DefaultResult(feedback=default_feedback(), reason=f"analysis failed: {e}")

        elapsed = int((time.monotonic() - started) * 1000)
        logger.info(f"Session {session_id}: qualitative analysis completed in {elapsed}ms")
        return QualitativeResult(feedback=feedback)

    async def analyze(
        self,
        session_id: str,
        transcript: Sequence[TranscriptEntry],
        persona: Optional[BuyerProfile] = None,
        difficulty: str = "beginner",
        duration_minutes: Optional[int] = None,
        external_violations: Optional[Sequence[ComplianceViolation]] = None,
        generated_at: Optional[float] = None,
    ) -> SessionReport:
        duration = duration_minutes or self.default_duration_minutes
        pattern_violations = self.compliance.scan_transcript(transcript)
        violations = merge(pattern_violations, list(external_violations or []))
        logger.info(f"Session {session_id}: analysis started with {len(transcript)} entries")

        heuristic: Optional[HeuristicResult] = None
        result: Union[QualitativeResult, DefaultResult]
        if len(transcript) < self.min_entries:
            result = DefaultResult(feedback=default_feedback(), reason="transcript too short")
        else:
            turns = [CoachTurn.from_entry(entry) for entry in transcript]
            heuristic = HeuristicResult(report=self.scoring.score(turns, pattern_violations))
            result = await self.qualitative(session_id, transcript, persona, difficulty, duration)

        return SessionReport(
            session_id=session_id,
            source=result.kind,
            feedback=result.feedback,
            heuristic=heuristic.report if heuristic else None,
            score=grade_to_score(result.feedback.overall_grade, self.tables),
            compliance_pass=compliance_pass(pattern_violations) if heuristic else None,
            compliance_violations=violations,
            generated_at=generated_at if generated_at is not None else time.time(),
        )

    async def run_for_session(
        self,
        store: SessionStore,
        session_id: str,
        external_violations: Optional[Sequence[ComplianceViolation]] = None,
    ) -> Optional[SessionReport]:
        """
        Analyze a stored session and publish the new report. The session
        always leaves `processing`: completed on success, failed only when
        the report cannot be persisted. Reports are stamped with the
        session end time, so re-running an ended session is repeatable.
        """
        state = store.mark_processing(session_id)
        transcript: List[TranscriptEntry] = list(state.transcript)
        try:
            report = await self.analyze(
                session_id,
                transcript,
                persona=state.persona,
                difficulty=state.difficulty,
                duration_minutes=state.duration_minutes,
                external_violations=external_violations,
                generated_at=state.ended_at,
            )
        except Exception:
            logger.exception(f"Session {session_id}: analysis crashed, storing default report")
            report = SessionReport(
                session_id=session_id,
                source="default",
                feedback=default_feedback(),
                score=grade_to_score("B", self.tables),
                generated_at=state.ended_at if state.ended_at is not None else time.time(),
            )

        try:
            store.save_report(report)
        except PersistenceError as e:
            logger.exception(f"Session {session_id}: report could not be persisted")
            store.mark_failed(session_id, str(e))
            return None
        logger.info(f"Session {session_id}: analysis completed ({report.source}, score {report.score})")
        return report

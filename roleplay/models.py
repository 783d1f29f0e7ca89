from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """
    Base for payloads that travel as camelCase JSON (the browser client's
    convention) while staying snake_case in Python.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionPhase(str, Enum):
    """
    Ordered stages of a roleplay consult. `close` is terminal.
    """

    RAPPORT = "rapport"
    MONEY_QUESTIONS = "money_questions"
    DEEP_QUESTIONS = "deep_questions"
    FRAME = "frame"
    CLOSE = "close"

    @classmethod
    def _missing_(cls, value: object) -> Optional["SessionPhase"]:
        # The live-coaching surface uses short keys ("money", "deep").
        if isinstance(value, str):
            key = value.strip().lower()
            aliases = {"money": cls.MONEY_QUESTIONS, "deep": cls.DEEP_QUESTIONS}
            if key in aliases:
                return aliases[key]
            for member in cls:
                if member.value == key:
                    return member
        return None

    @classmethod
    def order(cls) -> List["SessionPhase"]:
        return list(cls)

    @property
    def position(self) -> int:
        return SessionPhase.order().index(self)

    @property
    def is_terminal(self) -> bool:
        return self is SessionPhase.CLOSE

    def next_phase(self) -> Optional["SessionPhase"]:
        phases = SessionPhase.order()
        pos = self.position
        return phases[pos + 1] if pos + 1 < len(phases) else None


Personality = Literal["friendly", "cautious", "dominant", "distracted", "nervous", "skeptical"]
ResistanceLevel = Literal["low", "medium", "high"]
Difficulty = Literal["beginner", "intermediate", "advanced"]
Emotion = Literal["frustrated", "skeptical", "concerned", "happy", "neutral"]
InterruptionReason = Literal["agent_monologue", "agent_silence", "agent_repetition", "question_ignored"]
Severity = Literal["info", "warning", "critical"]
ComplianceCategory = Literal["disclosure", "fair_housing", "licensing", "promises", "ethics"]
AnalysisStatus = Literal["pending", "processing", "completed", "failed"]

PERSONALITIES: tuple = Personality.__args__  # type: ignore[attr-defined]
COMPLIANCE_CATEGORIES: tuple = ComplianceCategory.__args__  # type: ignore[attr-defined]
SEVERITIES: tuple = Severity.__args__  # type: ignore[attr-defined]


class BuyerProfile(_CamelModel):
    """
    Behavioral configuration of the simulated buyer for one session.

    Frozen: it is fixed at session start and never changes mid-session.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    experience_level: Literal["first_time", "move_up", "investor_lite"]
    emotional_state: Literal["excited", "rushed"]
    financial_comfort: Literal["clear", "unclear", "embarrassed"]
    resistance_level: ResistanceLevel
    question_depth: Literal["surface", "mixed", "advanced"]
    personality: Personality


_TRAINEE_ALIASES = {"trainee", "user", "agent"}
_COUNTERPART_ALIASES = {"counterpart", "ai_buyer", "buyer"}


def _normalize_speaker(value: object, trainee: str, counterpart: str) -> object:
    if isinstance(value, str):
        key = value.strip().lower()
        if key in _TRAINEE_ALIASES:
            return trainee
        if key in _COUNTERPART_ALIASES:
            return counterpart
    return value


class TranscriptEntry(_CamelModel):
    """
    One utterance in a session transcript. Entries are append-only.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    speaker: Literal["trainee", "counterpart"]
    content: str
    timestamp: float = 0.0
    phase: Optional[SessionPhase] = None

    @field_validator("speaker", mode="before")
    @classmethod
    def _speaker_alias(cls, value: object) -> object:
        return _normalize_speaker(value, "trainee", "counterpart")

    @property
    def is_trainee(self) -> bool:
        return self.speaker == "trainee"


class CoachTurn(BaseModel):
    """
    Turn shape used by the live-coaching surface: agent is the trainee,
    buyer is the simulated counterpart.
    """

    speaker: Literal["agent", "buyer"]
    text: str
    ts: float = 0.0

    @field_validator("speaker", mode="before")
    @classmethod
    def _speaker_alias(cls, value: object) -> object:
        return _normalize_speaker(value, "agent", "buyer")

    @classmethod
    def from_entry(cls, entry: TranscriptEntry) -> "CoachTurn":
        return cls(
            speaker="agent" if entry.is_trainee else "buyer",
            text=entry.content,
            ts=entry.timestamp,
        )


class InterruptionContext(BaseModel):
    """
    Signals evaluated fresh on every interruption check; never persisted.
    """

    model_config = ConfigDict(frozen=True)

    agent_speaking_duration: float = 0.0
    silence_duration: float = 0.0
    repetition_count: int = 0
    buyer_question_ignored: bool = False
    personality: str
    resistance_level: Optional[str] = None


class InterruptionDecision(BaseModel):
    should_interrupt: bool
    reason: Optional[InterruptionReason] = None
    phrase: Optional[str] = None


class PhaseAdvance(BaseModel):
    should_advance: bool
    next_phase: Optional[SessionPhase] = None


class ComplianceViolation(_CamelModel):
    """
    A detected instance of prohibited (or missing required) language.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    rule: str
    severity: Severity
    category: ComplianceCategory
    message: str
    suggestion: str
    transcript_index: Optional[int] = None
    timestamp: Optional[float] = None
    source: Literal["pattern", "ai"] = "pattern"


class ComplianceFlag(BaseModel):
    rule: str
    category: ComplianceCategory
    severity: Severity
    detail: str
    ts: Optional[float] = None
    advisory: bool = False


class NextDrill(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    rule: str
    script: str


class CoachReport(BaseModel):
    """
    Deterministic heuristic scoring output for a finished session.
    """

    model_config = ConfigDict(frozen=True)

    phase_scores: Dict[str, int]
    overall_score: int = Field(..., ge=0, le=100)
    grade: str
    compliance_pass: bool
    compliance_flags: List[ComplianceFlag] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    next_drill: NextDrill
    best_phase: SessionPhase
    worst_phase: SessionPhase
    summary: str = ""


class SkillGrade(_CamelModel):
    skill: str
    grade: str
    notes: str = ""
    trend: Optional[str] = "stable"


class ComplianceIssue(_CamelModel):
    severity: str
    description: str
    transcript_reference: Optional[int] = None
    suggestion: str = ""


class KeyMoment(_CamelModel):
    timestamp: float = 0.0
    type: str = "teachable"
    description: str
    transcript_index: Optional[int] = None


class SessionFeedback(_CamelModel):
    """
    Narrative feedback produced by the qualitative pass (or the fixed default).
    """

    overall_grade: str = Field(..., min_length=1)
    overall_summary: str = ""
    skill_grades: List[SkillGrade] = Field(..., min_length=1)
    strengths: List[str] = Field(default_factory=list)
    areas_for_improvement: List[str] = Field(default_factory=list)
    compliance_issues: List[ComplianceIssue] = Field(default_factory=list)
    key_moments: List[KeyMoment] = Field(default_factory=list)
    next_session_focus: str = ""


class HeuristicResult(BaseModel):
    kind: Literal["heuristic"] = "heuristic"
    report: CoachReport


class QualitativeResult(BaseModel):
    kind: Literal["qualitative"] = "qualitative"
    feedback: SessionFeedback


class DefaultResult(BaseModel):
    kind: Literal["default"] = "default"
    feedback: SessionFeedback
    reason: str = ""


ScoreResult = Annotated[
    Union[HeuristicResult, QualitativeResult, DefaultResult],
    Field(discriminator="kind"),
]


class SessionReport(_CamelModel):
    """
    Merged end-of-session report. Regenerating analysis produces a new one.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    session_id: str
    status: Literal["completed"] = "completed"
    source: Literal["qualitative", "default"]
    feedback: SessionFeedback
    heuristic: Optional[CoachReport] = None
    score: int
    compliance_pass: Optional[bool] = None
    compliance_violations: List[ComplianceViolation] = Field(default_factory=list)
    generated_at: float = Field(default_factory=time.time)

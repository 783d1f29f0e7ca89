from __future__ import annotations

import math
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .analysis import SessionAnalysisOrchestrator
from .buyer_behavior import PersonaBehaviorModel
from .compliance import AIComplianceChecker, ComplianceEducation, ComplianceEngine, education, merge
from .models import (
    AnalysisStatus,
    BuyerProfile,
    CoachTurn,
    ComplianceFlag,
    ComplianceViolation,
    Difficulty,
    Emotion,
    InterruptionReason,
    NextDrill,
    SessionPhase,
    SessionReport,
    TranscriptEntry,
)
from .phases import PhaseController
from .scoring import ScoringEngine
from .sessions import (
    AnalysisInProgressError,
    DuplicateUtteranceError,
    InvalidPersonaError,
    PersistenceError,
    RoleplayError,
    SessionAccessError,
    SessionNotFoundError,
    SessionState,
    SessionStore,
)
from .simulated_buyer import SESSION_START, SimulatedBuyerAgent

# Resolves a bearer token to a user id, or None when the token is invalid.
TokenVerifier = Callable[[str], Optional[str]]
BuyerFactory = Callable[[BuyerProfile, str], Any]


def token_is_user_id(token: str) -> Optional[str]:
    return token.strip() or None


_STATUS_BY_ERROR = (
    (InvalidPersonaError, 400),
    (SessionNotFoundError, 404),
    (SessionAccessError, 403),
    (DuplicateUtteranceError, 409),
    (AnalysisInProgressError, 409),
    (PersistenceError, 503),
)


def _to_http(error: RoleplayError) -> HTTPException:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return HTTPException(status_code=status, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# --- Request / response models -------------------------------------------------


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(_ApiModel):
    buyer_profile: Optional[Dict[str, Any]] = None
    difficulty: Difficulty = "intermediate"
    duration_minutes: int = 30


class CreateSessionResponse(_ApiModel):
    session_id: str
    buyer_system_prompt: str
    current_phase: SessionPhase


class TurnRequest(_ApiModel):
    session_id: str
    user_message: str
    conversation_history: List[Dict[str, Any]] = Field(default_factory=list)
    buyer_profile: Optional[Dict[str, Any]] = None
    current_phase: Optional[str] = None
    agent_speaking_duration: float = 0.0
    silence_duration: float = 0.0
    check_interruption: bool = False
    use_ai: bool = False
    difficulty: Optional[Difficulty] = None


class TurnResponse(_ApiModel):
    response: str
    emotion: Emotion
    should_advance_phase: Optional[bool] = None
    next_phase: Optional[SessionPhase] = None
    is_interruption: Optional[bool] = None
    interruption_reason: Optional[InterruptionReason] = None
    current_phase: SessionPhase
    compliance_violations: List[ComplianceViolation] = Field(default_factory=list)


class PhaseAdvanceResponse(_ApiModel):
    session_id: str
    advanced: bool
    current_phase: SessionPhase


class EndSessionRequest(_ApiModel):
    session_id: str
    transcript: List[Dict[str, Any]] = Field(default_factory=list)
    duration_seconds: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("durationSeconds", "actualDurationSeconds", "duration_seconds"),
    )


class EndSessionResponse(_ApiModel):
    feedback_url: str
    analysis_status: AnalysisStatus


class AnalysisResponse(_ApiModel):
    session_id: str
    analysis_status: AnalysisStatus
    report: Optional[SessionReport] = None


class CoachReportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_key: str = Field(
        ..., validation_alias=AliasChoices("sessionKey", "session_key", "sessionId", "session_id")
    )
    phase_key: str = Field(default="rapport", validation_alias=AliasChoices("phaseKey", "phase_key"))
    turns: List[CoachTurn] = Field(default_factory=list)


class CoachCompliance(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    passed: bool = Field(..., alias="pass")
    flags: List[ComplianceFlag] = Field(default_factory=list)


class CoachReportResponse(BaseModel):
    session_key: str
    overall_score: int
    skill_grade: str
    phase_scores: Dict[str, int]
    compliance: CoachCompliance
    strengths: List[str]
    improvements: List[str]
    next_drill: NextDrill
    summary: str
    best_phase: SessionPhase
    worst_phase: SessionPhase
    phase_key: str
    phase_score: int


class ComplianceCheckRequest(_ApiModel):
    message: str
    transcript_index: Optional[int] = None
    use_ai: bool = False


class ComplianceCheckResponse(_ApiModel):
    violations: List[ComplianceViolation]
    is_compliant: bool


# --- Dependencies --------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user_id = request.app.state.verify_token(credentials.credentials)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def get_store(request: Request) -> SessionStore:
    return request.app.state.store


def _parse_profile(raw: Optional[Dict[str, Any]]) -> BuyerProfile:
    # Personality is never defaulted; a profile without one is rejected.
    if not raw or not raw.get("personality"):
        raise InvalidPersonaError("Invalid buyer profile configuration")
    try:
        return BuyerProfile.model_validate(raw)
    except ValidationError as e:
        raise InvalidPersonaError(f"Invalid buyer profile configuration: {e.error_count()} error(s)") from e


def _parse_entries(raw: List[Dict[str, Any]]) -> List[TranscriptEntry]:
    try:
        return [TranscriptEntry.model_validate(item) for item in raw]
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid transcript entry: {e.error_count()} error(s)")


def _parse_phase(value: Optional[str]) -> Optional[SessionPhase]:
    if value is None:
        return None
    try:
        return SessionPhase(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown phase: {value}")


# --- Routes --------------------------------------------------------------------

router = APIRouter(prefix="/api")


@router.post("/sessions", response_model=CreateSessionResponse)
def create_session(
    payload: CreateSessionRequest,
    request: Request,
    user_id: str = Depends(current_user),
    store: SessionStore = Depends(get_store),
) -> CreateSessionResponse:
    """
    Start a roleplay session with a fixed buyer profile.
    """
    try:
        profile = _parse_profile(payload.buyer_profile)
    except RoleplayError as e:
        raise _to_http(e)

    state = store.create(
        user_id,
        profile,
        difficulty=payload.difficulty,
        duration_minutes=payload.duration_minutes,
    )
    buyer = request.app.state.buyer_factory(profile, payload.difficulty)
    return CreateSessionResponse(
        session_id=state.session_id,
        buyer_system_prompt=buyer.system_prompt,
        current_phase=state.current_phase,
    )


def _scan_turn(
    request: Request,
    entry: TranscriptEntry,
    index: int,
    use_ai: bool,
) -> List[ComplianceViolation]:
    compliance: ComplianceEngine = request.app.state.compliance
    pattern = compliance.scan(entry.content, index, entry.timestamp)
    external: List[ComplianceViolation] = []
    if use_ai:
        external = request.app.state.ai_checker.check(entry.content, index)
    return merge(pattern, external)


def _record_trainee(
    state: SessionState,
    entry: TranscriptEntry,
    violations: List[ComplianceViolation],
) -> None:
    state.append(entry)
    state.violations.extend(violations)


def _interrupt(
    request: Request,
    state: SessionState,
    payload: TurnRequest,
    history: List[TranscriptEntry],
    entry: TranscriptEntry,
    violations: List[ComplianceViolation],
) -> Optional[TurnResponse]:
    behavior: PersonaBehaviorModel = request.app.state.behavior
    context = behavior.context_for(
        [*history, entry],
        personality=state.persona.personality,
        resistance_level=state.persona.resistance_level,
        agent_speaking_duration=payload.agent_speaking_duration,
        silence_duration=payload.silence_duration,
    )
    decision = behavior.should_interrupt(context)
    if not decision.should_interrupt:
        return None

    phrase = decision.phrase or "Hold on, let me stop you there."
    _record_trainee(state, entry, violations)
    state.append(
        TranscriptEntry(
            speaker="counterpart",
            content=phrase,
            timestamp=time.time() - state.created_at,
            phase=state.current_phase,
        )
    )
    logger.info(f"Session {state.session_id}: buyer interrupted ({decision.reason})")
    return TurnResponse(
        response=phrase,
        emotion=behavior.interruption_emotion(state.persona.personality),
        is_interruption=True,
        interruption_reason=decision.reason,
        current_phase=state.current_phase,
        compliance_violations=violations,
    )


@router.post(
    "/buyer/respond",
    response_model=TurnResponse,
    response_model_exclude_none=True,
)
def buyer_respond(
    payload: TurnRequest,
    request: Request,
    user_id: str = Depends(current_user),
    store: SessionStore = Depends(get_store),
) -> TurnResponse:
    """
    Process one trainee utterance: compliance side-channel, interruption
    check, buyer reply, emotion tag and phase advancement.
    """
    try:
        profile = _parse_profile(payload.buyer_profile)
        state = store.get_for_user(payload.session_id, user_id)
        if profile != state.persona:
            raise InvalidPersonaError("Buyer profile does not match the session.")
        _parse_phase(payload.current_phase)

        with state.single_flight("trainee", payload.user_message):
            session_start = payload.user_message.strip() == SESSION_START
            client_history = _parse_entries(payload.conversation_history)
            history = client_history or list(state.transcript)
            violations: List[ComplianceViolation] = []
            entry: Optional[TranscriptEntry] = None

            if not session_start:
                entry = TranscriptEntry(
                    speaker="trainee",
                    content=payload.user_message,
                    timestamp=time.time() - state.created_at,
                    phase=state.current_phase,
                )
                # Nothing is recorded until the turn succeeds; the entry's
                # index is stable because the turn lock is held.
                violations = _scan_turn(request, entry, len(state.transcript), payload.use_ai)

                if payload.check_interruption:
                    interruption = _interrupt(request, state, payload, history, entry, violations)
                    if interruption is not None:
                        return interruption

            buyer = request.app.state.buyer_factory(state.persona, payload.difficulty or state.difficulty)
            reply = buyer.reply(payload.user_message, history, state.current_phase)
            behavior: PersonaBehaviorModel = request.app.state.behavior
            emotion = behavior.tag_emotion(reply, state.persona.personality)
            if entry is not None:
                _record_trainee(state, entry, violations)
            state.append(
                TranscriptEntry(
                    speaker="counterpart",
                    content=reply,
                    timestamp=time.time() - state.created_at,
                    phase=state.current_phase,
                )
            )

            phases: PhaseController = request.app.state.phases
            advance = phases.advance(
                state.current_phase,
                state.entries_in_phase,
                f"{'' if session_start else payload.user_message} {reply}",
            )
            if advance.should_advance and advance.next_phase is not None:
                logger.info(
                    f"Session {state.session_id}: {state.current_phase.value} -> {advance.next_phase.value}"
                )
                state.enter_phase(advance.next_phase)

            return TurnResponse(
                response=reply,
                emotion=emotion,
                should_advance_phase=advance.should_advance,
                next_phase=advance.next_phase,
                current_phase=state.current_phase,
                compliance_violations=violations,
            )
    except HTTPException:
        raise
    except RoleplayError as e:
        raise _to_http(e)
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Buyer response failed: {e}")


@router.post("/sessions/{session_id}/phase/advance", response_model=PhaseAdvanceResponse)
def advance_phase(
    session_id: str,
    request: Request,
    user_id: str = Depends(current_user),
    store: SessionStore = Depends(get_store),
) -> PhaseAdvanceResponse:
    try:
        state = store.get_for_user(session_id, user_id)
    except RoleplayError as e:
        raise _to_http(e)
    result = request.app.state.phases.force_advance(state.current_phase)
    if result.should_advance and result.next_phase is not None:
        state.enter_phase(result.next_phase)
    return PhaseAdvanceResponse(
        session_id=session_id,
        advanced=result.should_advance,
        current_phase=state.current_phase,
    )


def _schedule_analysis(
    request: Request,
    background_tasks: BackgroundTasks,
    store: SessionStore,
    state: SessionState,
) -> None:
    orchestrator: SessionAnalysisOrchestrator = request.app.state.orchestrator
    external = [v for v in state.violations if v.source == "ai"]
    store.mark_processing(state.session_id)
    background_tasks.add_task(orchestrator.run_for_session, store, state.session_id, external)


@router.post("/sessions/end", response_model=EndSessionResponse)
def end_session(
    payload: EndSessionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
    store: SessionStore = Depends(get_store),
) -> EndSessionResponse:
    """
    Close a session and queue its analysis. The client's transcript, when
    given, is the complete record and replaces the server-side one.
    """
    try:
        state = store.get_for_user(payload.session_id, user_id)
        if state.analysis_status == "processing":
            store.ensure_can_retry(state.session_id)
    except RoleplayError as e:
        raise _to_http(e)

    entries = _parse_entries(payload.transcript)
    if entries:
        state.replace_transcript(entries)
    state.ended_at = time.time()
    if payload.duration_seconds:
        state.duration_minutes = max(1, math.ceil(payload.duration_seconds / 60))

    _schedule_analysis(request, background_tasks, store, state)
    return EndSessionResponse(
        feedback_url=f"/roleplay/review/{state.session_id}",
        analysis_status="processing",
    )


@router.get("/sessions/{session_id}/analysis", response_model=AnalysisResponse)
def get_analysis(
    session_id: str,
    user_id: str = Depends(current_user),
    store: SessionStore = Depends(get_store),
) -> AnalysisResponse:
    """
    Current analysis status and report. A report that could not be saved
    surfaces as 503 until a retry succeeds.
    """
    try:
        state = store.get_for_user(session_id, user_id)
        if state.analysis_status == "failed":
            raise PersistenceError(state.analysis_error or f"Report for {session_id} could not be saved.")
    except RoleplayError as e:
        raise _to_http(e)
    return AnalysisResponse(
        session_id=session_id,
        analysis_status=state.analysis_status,
        report=state.report,
    )


@router.post("/sessions/{session_id}/analysis/retry", response_model=EndSessionResponse)
def retry_analysis(
    session_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
    store: SessionStore = Depends(get_store),
) -> EndSessionResponse:
    try:
        store.get_for_user(session_id, user_id)
        state = store.ensure_can_retry(session_id)
    except RoleplayError as e:
        raise _to_http(e)
    _schedule_analysis(request, background_tasks, store, state)
    return EndSessionResponse(
        feedback_url=f"/roleplay/review/{session_id}",
        analysis_status="processing",
    )


@router.post("/coach/report", response_model=CoachReportResponse, response_model_by_alias=True)
def coach_report(
    payload: CoachReportRequest,
    request: Request,
    user_id: str = Depends(current_user),
) -> CoachReportResponse:
    """
    Heuristic coach report for a turn list, with the score of one phase
    pulled out for the live-coaching view.
    """
    scoring: ScoringEngine = request.app.state.scoring
    report = scoring.score(payload.turns)
    try:
        phase_score = report.phase_scores[SessionPhase(payload.phase_key).value]
    except ValueError:
        phase_score = report.overall_score
    return CoachReportResponse(
        session_key=payload.session_key,
        overall_score=report.overall_score,
        skill_grade=report.grade,
        phase_scores=report.phase_scores,
        compliance=CoachCompliance(passed=report.compliance_pass, flags=report.compliance_flags),
        strengths=report.strengths,
        improvements=report.improvements,
        next_drill=report.next_drill,
        summary=report.summary,
        best_phase=report.best_phase,
        worst_phase=report.worst_phase,
        phase_key=payload.phase_key,
        phase_score=phase_score,
    )


@router.post("/compliance/check", response_model=ComplianceCheckResponse)
def compliance_check(
    payload: ComplianceCheckRequest,
    request: Request,
    user_id: str = Depends(current_user),
) -> ComplianceCheckResponse:
    compliance: ComplianceEngine = request.app.state.compliance
    pattern = compliance.scan(payload.message, payload.transcript_index)
    external: List[ComplianceViolation] = []
    if payload.use_ai:
        external = request.app.state.ai_checker.check(payload.message, payload.transcript_index)
    violations = merge(pattern, external)
    return ComplianceCheckResponse(violations=violations, is_compliant=not violations)


@router.get("/compliance/education/{category}", response_model=ComplianceEducation)
def compliance_education(category: str) -> ComplianceEducation:
    info = education(category)
    if info is None:
        raise HTTPException(status_code=404, detail=f"Unknown compliance category: {category}")
    return info


def create_app(
    store: Optional[SessionStore] = None,
    buyer_factory: Optional[BuyerFactory] = None,
    orchestrator: Optional[SessionAnalysisOrchestrator] = None,
    verify_token: Optional[TokenVerifier] = None,
    ai_checker: Optional[AIComplianceChecker] = None,
    behavior: Optional[PersonaBehaviorModel] = None,
) -> FastAPI:
    app = FastAPI(
        title="Roleplay API",
        version="0.1.0",
        description=(
            "HTTP API for sales roleplay sessions: simulated buyer turns, "
            "compliance checks and end-of-session coaching reports."
        ),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    compliance = ComplianceEngine()
    app.state.store = store or SessionStore()
    app.state.buyer_factory = buyer_factory or (
        lambda profile, difficulty: SimulatedBuyerAgent(profile=profile, difficulty=difficulty)
    )
    app.state.orchestrator = orchestrator or SessionAnalysisOrchestrator(compliance=compliance)
    app.state.verify_token = verify_token or token_is_user_id
    app.state.ai_checker = ai_checker or AIComplianceChecker()
    app.state.behavior = behavior or PersonaBehaviorModel()
    app.state.phases = PhaseController()
    app.state.compliance = compliance
    app.state.scoring = ScoringEngine(compliance=compliance)
    app.include_router(router)
    return app


app = create_app()

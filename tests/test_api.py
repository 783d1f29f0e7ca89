from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from roleplay.analysis import SessionAnalysisOrchestrator
from roleplay.api import create_app
from roleplay.compliance import validate_external
from roleplay.models import SessionFeedback, SkillGrade
from roleplay.sessions import InMemoryReportRepository, SessionStore

AUTH = {"Authorization": "Bearer user-1"}
OTHER_AUTH = {"Authorization": "Bearer user-2"}


class ScriptedBuyer:
    """Buyer stand-in that replays a fixed line."""

    line = "Great, nice to meet you. I'm looking forward to this."

    def __init__(self, profile, difficulty) -> None:
        self.profile = profile
        self.difficulty = difficulty
        self.system_prompt = f"You are a {profile.personality} buyer."

    def reply(self, user_message, history, phase) -> str:
        return self.line


class BrokenBuyer(ScriptedBuyer):
    def reply(self, user_message, history, phase) -> str:
        raise RuntimeError("provider exploded")


class FixedAnalyzer:
    async def analyze(self, transcript, persona, difficulty, duration_minutes) -> SessionFeedback:
        return SessionFeedback(overall_grade="A", skill_grades=[SkillGrade(skill="Closing Skills", grade="A")])


class FakeChecker:
    def check(self, message, transcript_index=None):
        return validate_external(
            [{"severity": "warning", "category": "licensing", "message": "Tax advice", "suggestion": "Refer out"}],
            transcript_index,
        )


@pytest.fixture
def client() -> TestClient:
    app = create_app(
        buyer_factory=ScriptedBuyer,
        orchestrator=SessionAnalysisOrchestrator(analyzer=FixedAnalyzer()),
        ai_checker=FakeChecker(),
    )
    return TestClient(app)


def _start(client: TestClient, profile: Dict[str, Any]) -> str:
    resp = client.post("/api/sessions", json={"buyerProfile": profile, "difficulty": "beginner"}, headers=AUTH)
    assert resp.status_code == 200, resp.text
    return resp.json()["sessionId"]


def _turn(client: TestClient, session_id: str, profile: Dict[str, Any], message: str, **extra: Any):
    body = {"sessionId": session_id, "userMessage": message, "buyerProfile": profile, **extra}
    return client.post("/api/buyer/respond", json=body, headers=AUTH)


def test_requires_bearer_token(client: TestClient, buyer_profile: dict) -> None:
    resp = client.post("/api/sessions", json={"buyerProfile": buyer_profile})
    assert resp.status_code == 401


def test_create_session(client: TestClient, buyer_profile: dict) -> None:
    resp = client.post("/api/sessions", json={"buyerProfile": buyer_profile}, headers=AUTH)
    body = resp.json()
    assert resp.status_code == 200
    assert body["buyerSystemPrompt"] == "You are a dominant buyer."
    assert body["currentPhase"] == "rapport"


@pytest.mark.parametrize("profile_patch", [{"personality": None}, {"personality": "grumpy"}])
def test_invalid_persona_is_rejected(client: TestClient, buyer_profile: dict, profile_patch: dict) -> None:
    resp = client.post("/api/sessions", json={"buyerProfile": {**buyer_profile, **profile_patch}}, headers=AUTH)
    assert resp.status_code == 400


def test_turn_without_persona_is_rejected(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    resp = client.post(
        "/api/buyer/respond",
        json={"sessionId": session_id, "userMessage": "Hello"},
        headers=AUTH,
    )
    assert resp.status_code == 400


def test_turn_reply_and_phase_advance(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)

    first = _turn(client, session_id, buyer_profile, "Hi, glad to connect!")
    assert first.status_code == 200
    assert first.json()["response"] == ScriptedBuyer.line
    assert first.json()["emotion"] == "happy"
    assert first.json()["shouldAdvancePhase"] is False
    assert "isInterruption" not in first.json()

    second = _turn(client, session_id, buyer_profile, "What made you start looking now?")
    body = second.json()
    assert body["shouldAdvancePhase"] is True
    assert body["nextPhase"] == "money_questions"
    assert body["currentPhase"] == "money_questions"


def test_session_start_greeting(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    resp = _turn(client, session_id, buyer_profile, "[SESSION_START]")
    assert resp.status_code == 200
    assert resp.json()["complianceViolations"] == []


def test_compliance_side_channel(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    resp = _turn(client, session_id, buyer_profile, "Home values always go up, trust me.")
    violations = resp.json()["complianceViolations"]
    assert [v["rule"] for v in violations] == ["appreciation"]
    assert violations[0]["transcriptIndex"] == 0


def test_duplicate_utterance_is_dropped(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    assert _turn(client, session_id, buyer_profile, "Tell me about your timeline.").status_code == 200
    assert _turn(client, session_id, buyer_profile, "Tell me about your timeline.").status_code == 409


def test_cross_session_and_unknown_session(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    body = {"sessionId": session_id, "userMessage": "Hello", "buyerProfile": buyer_profile}
    assert client.post("/api/buyer/respond", json=body, headers=OTHER_AUTH).status_code == 403
    body["sessionId"] = "does-not-exist"
    assert client.post("/api/buyer/respond", json=body, headers=AUTH).status_code == 404


def test_profile_must_match_session(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    other = {**buyer_profile, "personality": "friendly"}
    assert _turn(client, session_id, other, "Hello").status_code == 400


def test_interruption(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    resp = _turn(
        client,
        session_id,
        buyer_profile,
        "So let me walk you through everything about the market...",
        checkInterruption=True,
        agentSpeakingDuration=100,
        silenceDuration=20,
    )
    body = resp.json()
    assert body["isInterruption"] is True
    assert body["interruptionReason"] == "agent_monologue"
    assert body["emotion"] == "frustrated"


def test_turn_provider_failure_is_502(buyer_profile: dict) -> None:
    client = TestClient(create_app(buyer_factory=BrokenBuyer))
    session_id = _start(client, buyer_profile)
    assert _turn(client, session_id, buyer_profile, "Hello").status_code == 502


def test_manual_phase_advance(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    phases: List[str] = []
    for _ in range(5):
        resp = client.post(f"/api/sessions/{session_id}/phase/advance", headers=AUTH)
        phases.append(resp.json()["currentPhase"])
    assert phases == ["money_questions", "deep_questions", "frame", "close", "close"]


def test_end_session_and_fetch_analysis(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    _turn(client, session_id, buyer_profile, "Hi, what's your budget looking like?")
    _turn(client, session_id, buyer_profile, "Great. Can we schedule a showing?")

    resp = client.post("/api/sessions/end", json={"sessionId": session_id, "durationSeconds": 125}, headers=AUTH)
    assert resp.status_code == 200
    assert resp.json() == {"feedbackUrl": f"/roleplay/review/{session_id}", "analysisStatus": "processing"}

    analysis = client.get(f"/api/sessions/{session_id}/analysis", headers=AUTH).json()
    assert analysis["analysisStatus"] == "completed"
    report = analysis["report"]
    assert report["source"] == "qualitative"
    assert report["score"] == 95
    assert report["heuristic"]["phase_scores"]["close"] > 50

    retry = client.post(f"/api/sessions/{session_id}/analysis/retry", headers=AUTH)
    assert retry.status_code == 200


def test_end_session_with_short_transcript(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    resp = client.post(
        "/api/sessions/end",
        json={"sessionId": session_id, "transcript": [{"speaker": "user", "content": "Hi", "timestamp": 0}]},
        headers=AUTH,
    )
    assert resp.status_code == 200
    report = client.get(f"/api/sessions/{session_id}/analysis", headers=AUTH).json()["report"]
    assert report["source"] == "default"
    assert report["feedback"]["overallGrade"] == "B"


def test_retry_while_processing_is_refused(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    client.app.state.store.mark_processing(session_id)
    assert client.post(f"/api/sessions/{session_id}/analysis/retry", headers=AUTH).status_code == 409


def test_coach_report(client: TestClient) -> None:
    turns = [
        {"speaker": "agent", "text": "Glad we're talking. What monthly payment feels safe?", "ts": 1},
        {"speaker": "buyer", "text": "Maybe 2k.", "ts": 5},
        {"speaker": "agent", "text": "Here's how I work, step by step. Can we book a time?", "ts": 9},
    ]
    resp = client.post(
        "/api/coach/report",
        json={"session_key": "abc", "phase_key": "money", "turns": turns},
        headers=AUTH,
    )
    body = resp.json()
    assert resp.status_code == 200
    assert body["compliance"]["pass"] is True
    assert body["phase_score"] == body["phase_scores"]["money_questions"]
    assert body["skill_grade"] in {"A", "B", "C", "D", "F"}
    assert body["next_drill"]["title"]


def test_compliance_check_endpoint(client: TestClient) -> None:
    resp = client.post(
        "/api/compliance/check",
        json={"message": "You should put your savings here.", "transcriptIndex": 2, "useAi": True},
        headers=AUTH,
    )
    body = resp.json()
    assert [v["source"] for v in body["violations"]] == ["pattern", "ai"]
    assert body["isCompliant"] is False

    clean = client.post("/api/compliance/check", json={"message": "How are you today?"}, headers=AUTH).json()
    assert clean == {"violations": [], "isCompliant": True}


def test_compliance_education(client: TestClient) -> None:
    assert client.get("/api/compliance/education/promises").json()["title"] == "Prohibited Promises"
    assert client.get("/api/compliance/education/unknown").status_code == 404


def test_failed_turn_can_be_resent_without_duplicates(buyer_profile: dict) -> None:
    calls: List[str] = []

    class FlakyBuyer(ScriptedBuyer):
        def reply(self, user_message, history, phase) -> str:
            calls.append(user_message)
            if len(calls) == 1:
                raise RuntimeError("provider hiccup")
            return self.line

    client = TestClient(create_app(buyer_factory=FlakyBuyer))
    session_id = _start(client, buyer_profile)
    message = "Between us, home values always go up here."

    assert _turn(client, session_id, buyer_profile, message).status_code == 502
    resp = _turn(client, session_id, buyer_profile, message)
    assert resp.status_code == 200
    assert [v["transcriptIndex"] for v in resp.json()["complianceViolations"]] == [0, 0]

    state = client.app.state.store.get(session_id)
    assert [e.content for e in state.transcript if e.is_trainee] == [message]
    assert sorted((v.rule, v.transcript_index) for v in state.violations) == [
        ("appreciation", 0),
        ("misrepresentation", 0),
    ]


class FlakyRepository(InMemoryReportRepository):
    def __init__(self) -> None:
        super().__init__()
        self.available = False

    def save(self, report) -> None:
        if not self.available:
            raise IOError("datastore unavailable")
        super().save(report)


def test_unsaved_report_is_503_until_retry(buyer_profile: dict) -> None:
    repository = FlakyRepository()
    client = TestClient(
        create_app(
            store=SessionStore(repository=repository),
            buyer_factory=ScriptedBuyer,
            orchestrator=SessionAnalysisOrchestrator(analyzer=FixedAnalyzer()),
        )
    )
    session_id = _start(client, buyer_profile)
    _turn(client, session_id, buyer_profile, "Hi, what's your budget looking like?")

    resp = client.post("/api/sessions/end", json={"sessionId": session_id}, headers=AUTH)
    assert resp.status_code == 200
    assert client.get(f"/api/sessions/{session_id}/analysis", headers=AUTH).status_code == 503

    repository.available = True
    assert client.post(f"/api/sessions/{session_id}/analysis/retry", headers=AUTH).status_code == 200
    analysis = client.get(f"/api/sessions/{session_id}/analysis", headers=AUTH)
    assert analysis.status_code == 200
    assert analysis.json()["analysisStatus"] == "completed"


def test_ai_turn_violations_reach_report_without_gating(client: TestClient, buyer_profile: dict) -> None:
    session_id = _start(client, buyer_profile)
    first = _turn(client, session_id, buyer_profile, "Hi, how are you today?", useAi=True)
    assert [v["source"] for v in first.json()["complianceViolations"]] == ["ai"]
    _turn(client, session_id, buyer_profile, "What timeline are you working with?", useAi=True)

    client.post("/api/sessions/end", json={"sessionId": session_id}, headers=AUTH)
    report = client.get(f"/api/sessions/{session_id}/analysis", headers=AUTH).json()["report"]

    ai = [v for v in report["complianceViolations"] if v["source"] == "ai"]
    assert [v["transcriptIndex"] for v in ai] == [0, 2]
    assert report["compliancePass"] is True

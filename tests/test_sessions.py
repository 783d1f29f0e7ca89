import threading
import time

import pytest

from roleplay.models import BuyerProfile, SessionPhase, TranscriptEntry
from roleplay.sessions import (
    AnalysisInProgressError,
    DuplicateUtteranceError,
    SessionAccessError,
    SessionNotFoundError,
    SessionStore,
)


@pytest.fixture
def store() -> SessionStore:
    return SessionStore(retry_after_seconds=30)


@pytest.fixture
def profile(buyer_profile: dict) -> BuyerProfile:
    return BuyerProfile.model_validate(buyer_profile)


def test_ownership_checks(store: SessionStore, profile: BuyerProfile) -> None:
    state = store.create("alice", profile)
    assert store.get_for_user(state.session_id, "alice") is state
    with pytest.raises(SessionAccessError):
        store.get_for_user(state.session_id, "bob")
    with pytest.raises(SessionNotFoundError):
        store.get_for_user("missing", "alice")


def test_duplicate_in_flight_is_rejected(store: SessionStore, profile: BuyerProfile) -> None:
    state = store.create("alice", profile)
    with state.single_flight("trainee", "What's your budget?"):
        with pytest.raises(DuplicateUtteranceError):
            with state.single_flight("trainee", "what's your  budget?"):
                pass


def test_last_processed_utterance_is_rejected(store: SessionStore, profile: BuyerProfile) -> None:
    state = store.create("alice", profile)
    with state.single_flight("trainee", "Hello there"):
        pass
    with pytest.raises(DuplicateUtteranceError):
        with state.single_flight("trainee", "Hello there"):
            pass
    with state.single_flight("trainee", "Something new"):
        pass
    # a different speaker has its own history
    with state.single_flight("counterpart", "Hello there"):
        pass


def test_failed_utterance_can_be_resent(store: SessionStore, profile: BuyerProfile) -> None:
    state = store.create("alice", profile)
    with pytest.raises(RuntimeError):
        with state.single_flight("trainee", "Hello there"):
            raise RuntimeError("provider error")
    with state.single_flight("trainee", "Hello there"):
        pass


def test_distinct_utterances_are_serialized(store: SessionStore, profile: BuyerProfile) -> None:
    state = store.create("alice", profile)
    order = []
    inside = threading.Event()
    release = threading.Event()

    def first() -> None:
        with state.single_flight("trainee", "first"):
            inside.set()
            release.wait(timeout=2)
            order.append("first")

    def second() -> None:
        with state.single_flight("trainee", "second"):
            order.append("second")

    t1 = threading.Thread(target=first)
    t1.start()
    inside.wait(timeout=2)
    t2 = threading.Thread(target=second)
    t2.start()
    time.sleep(0.05)
    assert order == []
    release.set()
    t1.join()
    t2.join()
    assert order == ["first", "second"]


def test_retry_window(store: SessionStore, profile: BuyerProfile) -> None:
    state = store.create("alice", profile)
    assert not store.can_retry(state.session_id)

    store.mark_processing(state.session_id)
    started = state.analysis_started_at
    assert not store.can_retry(state.session_id, now=started + 5)
    with pytest.raises(AnalysisInProgressError):
        store.ensure_can_retry(state.session_id, now=started + 5)
    assert store.can_retry(state.session_id, now=started + 31)


def test_phase_offset_tracking(store: SessionStore, profile: BuyerProfile) -> None:
    state = store.create("alice", profile)
    for i in range(5):
        state.append(TranscriptEntry(speaker="trainee", content=f"line {i}"))
    assert state.entries_in_phase == 5
    state.enter_phase(SessionPhase.MONEY_QUESTIONS)
    assert state.entries_in_phase == 0
    state.append(TranscriptEntry(speaker="counterpart", content="ok"))
    assert state.entries_in_phase == 1


def test_transcript_replacement_waits_for_turn(store: SessionStore, profile: BuyerProfile) -> None:
    state = store.create("alice", profile)
    replacement = [TranscriptEntry(speaker="trainee", content="from client")]
    replaced = threading.Event()

    def end_session() -> None:
        state.replace_transcript(replacement)
        replaced.set()

    with state.single_flight("trainee", "in flight"):
        worker = threading.Thread(target=end_session)
        worker.start()
        time.sleep(0.05)
        assert not replaced.is_set()
        state.append(TranscriptEntry(speaker="trainee", content="in flight"))
    worker.join(timeout=2)

    assert replaced.is_set()
    assert [e.content for e in state.transcript] == ["from client"]
    assert state.entries_in_phase == 1

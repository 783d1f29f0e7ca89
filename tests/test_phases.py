import pytest

from roleplay.models import SessionPhase
from roleplay.phases import PhaseController
from roleplay.tables import PhaseTables, build_phase_tables


def test_needs_minimum_messages_before_advancing() -> None:
    controller = PhaseController()
    assert not controller.advance(SessionPhase.RAPPORT, 3, "Nice to meet you!").should_advance

    result = controller.advance(SessionPhase.RAPPORT, 4, "So NICE TO MEET you!")
    assert result.should_advance
    assert result.next_phase is SessionPhase.MONEY_QUESTIONS


def test_no_completion_phrase_means_no_advance() -> None:
    result = PhaseController().advance(SessionPhase.MONEY_QUESTIONS, 10, "Tell me about the schools.")
    assert not result.should_advance
    assert result.next_phase is None


def test_close_is_terminal() -> None:
    controller = PhaseController()
    assert not controller.advance(SessionPhase.CLOSE, 50, "sounds good, ready to go").should_advance
    assert not controller.force_advance(SessionPhase.CLOSE).should_advance


def test_phases_only_move_forward_one_step() -> None:
    controller = PhaseController()
    phrases = {
        SessionPhase.RAPPORT: "looking forward to this",
        SessionPhase.MONEY_QUESTIONS: "we are pre-approved",
        SessionPhase.DEEP_QUESTIONS: "that makes sense",
        SessionPhase.FRAME: "I'm comfortable with that",
    }
    phase = SessionPhase.RAPPORT
    visited = [phase]
    while not phase.is_terminal:
        result = controller.advance(phase, 4, phrases[phase])
        assert result.should_advance
        assert result.next_phase.position == phase.position + 1
        phase = result.next_phase
        visited.append(phase)
    assert visited == SessionPhase.order()


def test_force_advance_skips_checks() -> None:
    result = PhaseController().force_advance(SessionPhase.FRAME)
    assert result.should_advance
    assert result.next_phase is SessionPhase.CLOSE


def test_min_messages_is_injectable() -> None:
    base = build_phase_tables()
    controller = PhaseController(tables=PhaseTables(completion_phrases=base.completion_phrases, min_messages=2))
    assert controller.advance("rapport", 2, "good to connect").should_advance


@pytest.mark.parametrize("alias, phase", [("money", SessionPhase.MONEY_QUESTIONS), ("deep", SessionPhase.DEEP_QUESTIONS)])
def test_short_phase_aliases(alias: str, phase: SessionPhase) -> None:
    assert SessionPhase(alias) is phase

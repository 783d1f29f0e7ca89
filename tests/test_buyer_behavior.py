import random

import pytest

from roleplay.buyer_behavior import (
    PersonaBehaviorModel,
    build_interruption_context,
    count_repetitions,
    interruption_emotion,
    interruption_phrase,
    question_ignored,
    should_interrupt,
    tag_emotion,
    word_similarity,
)
from roleplay.models import InterruptionContext, TranscriptEntry
from roleplay.tables import DEFAULT_BEHAVIOR_TABLES


def test_monologue_beats_every_other_trigger() -> None:
    context = InterruptionContext(
        agent_speaking_duration=100,
        silence_duration=20,
        repetition_count=5,
        buyer_question_ignored=True,
        personality="dominant",
    )
    decision = should_interrupt(context)
    assert decision.should_interrupt
    assert decision.reason == "agent_monologue"
    assert decision.phrase in DEFAULT_BEHAVIOR_TABLES.interruption_phrases["dominant"]["too_long"]


@pytest.mark.parametrize(
    "kwargs, reason",
    [
        ({"silence_duration": 11}, "agent_silence"),
        ({"repetition_count": 3}, "agent_repetition"),
        ({"buyer_question_ignored": True}, "question_ignored"),
    ],
)
def test_trigger_priority(kwargs: dict, reason: str) -> None:
    context = InterruptionContext(personality="friendly", agent_speaking_duration=30, **kwargs)
    assert should_interrupt(context).reason == reason


def test_patience_depends_on_personality() -> None:
    # 40s is within a friendly buyer's patience but not a distracted one's
    friendly = InterruptionContext(personality="friendly", agent_speaking_duration=40)
    distracted = InterruptionContext(personality="distracted", agent_speaking_duration=40)
    unknown = InterruptionContext(personality="mystery", agent_speaking_duration=46)
    assert not should_interrupt(friendly).should_interrupt
    assert should_interrupt(distracted).reason == "agent_monologue"
    assert should_interrupt(unknown).reason == "agent_monologue"


def test_nothing_fires_on_a_calm_conversation() -> None:
    decision = should_interrupt(InterruptionContext(personality="cautious", silence_duration=10, repetition_count=2))
    assert not decision.should_interrupt
    assert decision.reason is None


def test_similarity_is_bounded_and_symmetric() -> None:
    pairs = [
        ("Let me explain the mortgage process", "The mortgage process is simple"),
        ("", "anything at all"),
        ("a b c", "d e f"),
        ("Closing costs matter", "closing COSTS matter"),
    ]
    for a, b in pairs:
        sim = word_similarity(a, b)
        assert 0.0 <= sim <= 1.0
        assert sim == word_similarity(b, a)
    assert word_similarity("", "") == 0.0
    assert word_similarity("Closing costs matter", "closing COSTS matter") == 1.0


def test_repetitions_use_the_configured_window() -> None:
    line = "We should really talk about your mortgage options today"
    utterances = [line] * 7
    assert count_repetitions(utterances) == 5
    assert count_repetitions(utterances, window=2) == 2
    assert count_repetitions([line]) == 0
    assert count_repetitions(["Something completely different here", line]) == 0


def test_question_ignored_needs_keyword_overlap() -> None:
    question = "What about closing costs and inspection fees?"
    assert question_ignored(question, "Let's talk about the weather.")
    assert not question_ignored(question, "Closing costs usually run two to five percent.")
    assert not question_ignored("I like the kitchen.", "Great!")
    assert not question_ignored(question, None)


def test_emotion_tiers_in_order() -> None:
    assert tag_emotion("I don't think that works.", "friendly") == "frustrated"
    assert tag_emotion("Are you sure? I love it though.", "friendly") == "skeptical"
    assert tag_emotion("Honestly I'm worried.", "friendly") == "concerned"
    assert tag_emotion("That sounds good!", "dominant") == "happy"
    assert tag_emotion("Okay.", "nervous") == "concerned"
    assert tag_emotion("Okay.", "skeptical") == "skeptical"
    assert tag_emotion("Okay.", "friendly") == "neutral"


def test_interruption_emotion_table() -> None:
    assert interruption_emotion("dominant") == "frustrated"
    assert interruption_emotion("cautious") == "concerned"
    assert interruption_emotion("someone-else") == "neutral"


def test_phrase_fallbacks() -> None:
    phrases = DEFAULT_BEHAVIOR_TABLES.interruption_phrases
    rng = random.Random(7)
    assert interruption_phrase("unknown", "agent_silence", rng=rng) in phrases["cautious"]["silence"]
    assert interruption_phrase("dominant", "bogus", rng=rng) in phrases["dominant"]["too_long"]
    assert interruption_phrase("nervous", "question_ignored", rng=rng) in phrases["nervous"]["ignored"]


def test_context_from_history() -> None:
    history = [
        TranscriptEntry(speaker="counterpart", content="How much is the down payment going to be?"),
        TranscriptEntry(speaker="trainee", content="Let's look at some listings first."),
    ]
    context = build_interruption_context(history, personality="skeptical", silence_duration=2)
    assert context.buyer_question_ignored
    assert context.repetition_count == 0

    model = PersonaBehaviorModel(rng=random.Random(1))
    decision = model.should_interrupt(model.context_for(history, personality="skeptical"))
    assert decision.reason == "question_ignored"

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set

from .models import (
    Emotion,
    InterruptionContext,
    InterruptionDecision,
    TranscriptEntry,
)
from .tables import DEFAULT_BEHAVIOR_TABLES, REASON_PHRASE_KEYS, BehaviorTables

_NON_WORD = re.compile(r"\W+")


def significant_words(text: str) -> List[str]:
    """
    Lowercased words longer than three characters, first occurrence order.
    """
    seen: Set[str] = set()
    words: List[str] = []
    for word in _NON_WORD.split((text or "").lower()):
        if len(word) > 3 and word not in seen:
            seen.add(word)
            words.append(word)
    return words


def word_similarity(a: str, b: str) -> float:
    """
    Intersection over union of the significant word sets of `a` and `b`.
    """
    words_a = set(significant_words(a))
    words_b = set(significant_words(b))
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def count_repetitions(
    trainee_utterances: Sequence[str],
    *,
    window: int = DEFAULT_BEHAVIOR_TABLES.repetition_window,
    threshold: float = DEFAULT_BEHAVIOR_TABLES.repetition_similarity,
) -> int:
    """
    How many of the previous `window` trainee utterances the latest one
    repeats (similarity strictly above `threshold`).
    """
    if len(trainee_utterances) < 2 or window <= 0:
        return 0
    latest = trainee_utterances[-1]
    previous = trainee_utterances[-(window + 1) : -1]
    return sum(1 for earlier in previous if word_similarity(latest, earlier) > threshold)


def question_ignored(last_counterpart: Optional[str], last_trainee: Optional[str]) -> bool:
    """
    True when the buyer's last line asked something and the trainee's reply
    echoes fewer than min(2, keyword count) of the question's keywords.
    """
    if not last_counterpart or "?" not in last_counterpart:
        return False
    if last_trainee is None:
        return False
    keywords = significant_words(last_counterpart)
    reply = last_trainee.lower()
    matched = sum(1 for word in keywords if word in reply)
    return matched < min(2, len(keywords))


def tag_emotion(
    response: str,
    personality: str,
    tables: BehaviorTables = DEFAULT_BEHAVIOR_TABLES,
) -> Emotion:
    """
    Classify a buyer line by cascading cue tiers; the first tier that
    matches wins, then the personality default, then neutral.
    """
    text = (response or "").lower()
    for emotion, cues in tables.emotion_rules:
        if any(cue in text for cue in cues):
            return emotion  # type: ignore[return-value]
    return tables.personality_emotions.get(personality, "neutral")  # type: ignore[return-value]


def interruption_emotion(
    personality: str,
    tables: BehaviorTables = DEFAULT_BEHAVIOR_TABLES,
) -> Emotion:
    return tables.interruption_emotions.get(personality, "neutral")  # type: ignore[return-value]


def interruption_phrase(
    personality: str,
    reason: str,
    tables: BehaviorTables = DEFAULT_BEHAVIOR_TABLES,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Pick a line for (personality, reason). Unknown personalities borrow the
    cautious lines and unknown reasons the too-long lines.
    """
    phrase_key = REASON_PHRASE_KEYS.get(reason, reason)
    by_reason = tables.interruption_phrases.get(personality)
    if by_reason is None:
        by_reason = tables.interruption_phrases[tables.fallback_personality]
    options = by_reason.get(phrase_key) or by_reason[tables.fallback_phrase_key]
    return (rng or random).choice(options)


def should_interrupt(
    context: InterruptionContext,
    tables: BehaviorTables = DEFAULT_BEHAVIOR_TABLES,
    rng: Optional[random.Random] = None,
) -> InterruptionDecision:
    """
    Evaluate interruption triggers in fixed priority order and return the
    first one that fires.
    """
    reason: Optional[str] = None
    if context.agent_speaking_duration > tables.patience_for(context.personality):
        reason = "agent_monologue"
    elif context.silence_duration > tables.silence_seconds:
        reason = "agent_silence"
    elif context.repetition_count >= tables.repetition_threshold:
        reason = "agent_repetition"
    elif context.buyer_question_ignored:
        reason = "question_ignored"

    if reason is None:
        return InterruptionDecision(should_interrupt=False)
    return InterruptionDecision(
        should_interrupt=True,
        reason=reason,
        phrase=interruption_phrase(context.personality, reason, tables, rng),
    )


def build_interruption_context(
    history: Sequence[TranscriptEntry],
    *,
    personality: str,
    resistance_level: Optional[str] = None,
    agent_speaking_duration: float = 0.0,
    silence_duration: float = 0.0,
    tables: BehaviorTables = DEFAULT_BEHAVIOR_TABLES,
) -> InterruptionContext:
    trainee_lines = [entry.content for entry in history if entry.is_trainee]
    buyer_lines = [entry.content for entry in history if not entry.is_trainee]
    return InterruptionContext(
        agent_speaking_duration=agent_speaking_duration,
        silence_duration=silence_duration,
        repetition_count=count_repetitions(
            trainee_lines,
            window=tables.repetition_window,
            threshold=tables.repetition_similarity,
        ),
        buyer_question_ignored=question_ignored(
            buyer_lines[-1] if buyer_lines else None,
            trainee_lines[-1] if trainee_lines else None,
        ),
        personality=personality,
        resistance_level=resistance_level,
    )


@dataclass(frozen=True)
class PersonaBehaviorModel:
    """
    Bundles the behavior functions with one table set and random source.
    """

    tables: BehaviorTables = field(default=DEFAULT_BEHAVIOR_TABLES)
    rng: Optional[random.Random] = None

    def tag_emotion(self, response: str, personality: str) -> Emotion:
        return tag_emotion(response, personality, self.tables)

    def interruption_emotion(self, personality: str) -> Emotion:
        return interruption_emotion(personality, self.tables)

    def context_for(
        self,
        history: Sequence[TranscriptEntry],
        *,
        personality: str,
        resistance_level: Optional[str] = None,
        agent_speaking_duration: float = 0.0,
        silence_duration: float = 0.0,
    ) -> InterruptionContext:
        return build_interruption_context(
            history,
            personality=personality,
            resistance_level=resistance_level,
            agent_speaking_duration=agent_speaking_duration,
            silence_duration=silence_duration,
            tables=self.tables,
        )

    def should_interrupt(self, context: InterruptionContext) -> InterruptionDecision:
        return should_interrupt(context, self.tables, self.rng)

"""
Static lookup tables for the behavior, phase and scoring engines.

Everything here is built once at import time and exposed through frozen
dataclasses wrapping read-only mappings and tuples. The engines take a table
object as a parameter (defaulting to the module-level instance) so tests can
inject variants without touching global state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from .config import get_float, get_int
from .models import NextDrill, SessionPhase


def _freeze(data: dict) -> Mapping:
    return MappingProxyType(dict(data))


# --- Buyer behavior -----------------------------------------------------------

REASON_PHRASE_KEYS: Mapping[str, str] = _freeze(
    {
        "agent_monologue": "too_long",
        "agent_silence": "silence",
        "agent_repetition": "repetition",
        "question_ignored": "ignored",
    }
)

_PATIENCE_SECONDS = {
    "friendly": 60.0,
    "cautious": 50.0,
    "nervous": 40.0,
    "skeptical": 35.0,
    "dominant": 30.0,
    "distracted": 25.0,
}

# First matching tier wins; personality defaults are consulted afterwards.
_EMOTION_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("frustrated", ("i don't", "that's not", "frustrated", "already said")),
    ("skeptical", ("are you sure", "i'm not convinced", "how do i know", "prove")),
    ("concerned", ("worried", "concerned", "nervous", "scary")),
    ("happy", ("great", "perfect", "love", "excited", "sounds good")),
)

_PERSONALITY_EMOTIONS = {"nervous": "concerned", "skeptical": "skeptical"}

_INTERRUPTION_EMOTIONS = {
    "friendly": "neutral",
    "dominant": "frustrated",
    "nervous": "concerned",
    "skeptical": "skeptical",
    "distracted": "neutral",
    "cautious": "concerned",
}

_INTERRUPTION_PHRASES = {
    "friendly": {
        "too_long": (
            "Oh, sorry to jump in, but I have a quick question...",
            "That's interesting! Can I ask something real quick?",
            "Hold that thought - I want to make sure I understand...",
        ),
        "silence": (
            "So... where were we?",
            "Is everything okay?",
            "What do you think I should do next?",
        ),
        "repetition": (
            "I think I got that part - what about...?",
            "Right, right - so what's the next step?",
            "Makes sense! What else should I know?",
        ),
        "ignored": (
            "Oh, and going back to my question earlier...",
            "But what about what I asked before?",
            "Sorry, I'm still wondering about...",
        ),
    },
    "cautious": {
        "too_long": (
            "Let me stop you there - I want to make sure I understand this part.",
            "Can we slow down? I have some questions about what you just said.",
            "Before you continue, I need to think about that for a moment.",
        ),
        "silence": (
            "So what should I be thinking about here?",
            "What would you recommend I do?",
            "Can you clarify what you meant earlier?",
        ),
        "repetition": (
            "I understand that point. Can we move to the next topic?",
            "I've noted that. What else should I consider?",
            "Got it. What are the other factors I should think about?",
        ),
        "ignored": (
            "I still have concerns about what I asked earlier.",
            "I'd like to revisit my previous question.",
            "Before we continue, can you address my earlier concern?",
        ),
    },
    "dominant": {
        "too_long": (
            "Let me stop you right there.",
            "Okay, I get it. Here's what I want to know...",
            "That's enough background - let's get to the point.",
        ),
        "silence": (
            "So what's the bottom line here?",
            "I don't have all day - what do you recommend?",
            "Let's keep this moving.",
        ),
        "repetition": (
            "You've said that already. What else?",
            "I heard you the first time. Next topic.",
            "We're going in circles here.",
        ),
        "ignored": (
            "You didn't answer my question.",
            "That's not what I asked.",
            "Let's go back to what I was asking about.",
        ),
    },
    "distracted": {
        "too_long": (
            "Sorry, I missed some of that - my phone buzzed. What was the main point?",
            "Can you give me the short version? I have a meeting in a bit.",
            "Hold on - okay, what were you saying?",
        ),
        "silence": (
            "Sorry, are we still talking about the house thing?",
            "What should I be focusing on here?",
            "Right, so... what's next?",
        ),
        "repetition": (
            "Got it, got it. What's the quick summary?",
            "Okay, I think I understand. Bottom line?",
            "Sure, sure. Moving on?",
        ),
        "ignored": (
            "Wait, I asked something earlier... what was it... oh right!",
            "Before I forget - what about my earlier question?",
            "Sorry, can we go back to what I asked?",
        ),
    },
    "nervous": {
        "too_long": (
            "I'm sorry, this is a lot to take in. Can we slow down?",
            "I'm feeling a bit overwhelmed. What's the most important thing here?",
            "Can you break that down for me? I want to make sure I understand.",
        ),
        "silence": (
            "Did I say something wrong?",
            "Is this... is this going okay?",
            "What should I be doing now?",
        ),
        "repetition": (
            "I think I understand that part. Is there anything I should be worried about?",
            "Okay, I got that. What could go wrong though?",
            "Right. But what if things don't work out?",
        ),
        "ignored": (
            "I'm still worried about what I asked before...",
            "Can we talk more about my concern? It's really bothering me.",
            "I don't want to be difficult, but I'm still confused about...",
        ),
    },
    "skeptical": {
        "too_long": (
            "Hold on - that sounds like a sales pitch. What's the real deal here?",
            "I've heard this before from other agents. What makes you different?",
            "Let me stop you - can you prove any of that?",
        ),
        "silence": (
            "So what are you not telling me?",
            "Is there something you're holding back?",
            "What's the catch here?",
        ),
        "repetition": (
            "You keep saying that, but I'm not convinced.",
            "Repeating it doesn't make it true. Show me the data.",
            "I need more than your word on this.",
        ),
        "ignored": (
            "You're avoiding my question. That's concerning.",
            "Why won't you answer what I asked?",
            "I asked a specific question and you're dancing around it.",
        ),
    },
}


@dataclass(frozen=True)
class BehaviorTables:
    patience_seconds: Mapping[str, float]
    default_patience_seconds: float
    silence_seconds: float
    repetition_threshold: int
    repetition_similarity: float
    repetition_window: int
    emotion_rules: Tuple[Tuple[str, Tuple[str, ...]], ...]
    personality_emotions: Mapping[str, str]
    interruption_emotions: Mapping[str, str]
    interruption_phrases: Mapping[str, Mapping[str, Tuple[str, ...]]]
    fallback_personality: str = "cautious"
    fallback_phrase_key: str = "too_long"

    def patience_for(self, personality: str) -> float:
        return self.patience_seconds.get(personality, self.default_patience_seconds)


def build_behavior_tables() -> BehaviorTables:
    return BehaviorTables(
        patience_seconds=_freeze(_PATIENCE_SECONDS),
        default_patience_seconds=get_float("behavior", "default_patience_seconds", 45.0),
        silence_seconds=get_float("behavior", "silence_seconds", 10.0),
        repetition_threshold=get_int("behavior", "repetition_threshold", 3),
        repetition_similarity=get_float("behavior", "repetition_similarity", 0.6),
        repetition_window=get_int("behavior", "repetition_window", 5),
        emotion_rules=_EMOTION_RULES,
        personality_emotions=_freeze(_PERSONALITY_EMOTIONS),
        interruption_emotions=_freeze(_INTERRUPTION_EMOTIONS),
        interruption_phrases=_freeze(
            {name: _freeze(table) for name, table in _INTERRUPTION_PHRASES.items()}
        ),
    )


# --- Phase advancement --------------------------------------------------------

_COMPLETION_PHRASES = {
    SessionPhase.RAPPORT: ("nice to meet", "looking forward", "good to connect", "excited to"),
    SessionPhase.MONEY_QUESTIONS: ("budget", "pre-approved", "afford", "down payment", "monthly"),
    SessionPhase.DEEP_QUESTIONS: ("understand", "makes sense", "that helps", "clear picture"),
    SessionPhase.FRAME: ("sounds good", "like how you work", "comfortable with", "ready to"),
    SessionPhase.CLOSE: (),
}


@dataclass(frozen=True)
class PhaseTables:
    completion_phrases: Mapping[SessionPhase, Tuple[str, ...]]
    min_messages: int


def build_phase_tables() -> PhaseTables:
    return PhaseTables(
        completion_phrases=_freeze(_COMPLETION_PHRASES),
        min_messages=get_int("phases", "min_messages", 4),
    )


# --- Heuristic scoring --------------------------------------------------------


@dataclass(frozen=True)
class PhaseBonus:
    """
    Points awarded when any keyword appears in the trainee text and the
    trainee asked at least `min_questions` questions. No keywords means the
    question condition alone decides.
    """

    points: int
    keywords: Tuple[str, ...] = ()
    min_questions: int = 0


_PHASE_BONUSES = {
    SessionPhase.RAPPORT: (
        PhaseBonus(10, ("glad", "thanks", "appreciate", "happy to", "totally fair")),
        PhaseBonus(8, min_questions=1),
    ),
    SessionPhase.MONEY_QUESTIONS: (
        PhaseBonus(15, ("budget", "monthly", "payment", "down payment", "closing costs")),
        PhaseBonus(12, ("credit", "score", "pre-approval", "preapproval", "lender")),
        PhaseBonus(6, ("comfortable", "range", "safe payment")),
    ),
    SessionPhase.DEEP_QUESTIONS: (
        PhaseBonus(14, ("worried", "concern", "fear", "hesitate", "what would make")),
        PhaseBonus(8, min_questions=2),
    ),
    SessionPhase.FRAME: (
        PhaseBonus(18, ("here's how", "my process", "step", "plan", "next step")),
        PhaseBonus(10, ("tour with a purpose", "i'll lead", "i'll guide", "i'll keep you updated")),
    ),
    SessionPhase.CLOSE: (
        PhaseBonus(18, ("today or tomorrow", "next step", "schedule", "book", "commit")),
        PhaseBonus(6, ("no pressure", "totally fine", "we can")),
    ),
}

_NEXT_DRILLS = {
    SessionPhase.MONEY_QUESTIONS: NextDrill(
        title="60s Money Drill - Payment + Credit",
        rule="Ask payment comfort + credit range in simple language.",
        script=(
            'Say: "Quick question - what monthly payment feels safe for you?"\n'
            'Then: "Do you know your credit range: over 700, 640-700, or under 640?"\n'
            "Then stop talking and listen."
        ),
    ),
    SessionPhase.FRAME: NextDrill(
        title="60s Frame Drill - Your Process",
        rule="Explain your process in 5 simple steps.",
        script=(
            'Say: "Here\'s how I help buyers win in 5 steps..."\n'
            "1) Budget + approval\n2) Smart plan\n3) Tour with purpose\n"
            "4) Offer + negotiate\n5) Closing support\n"
            'Then ask: "Does that feel simple and clear?"'
        ),
    ),
    SessionPhase.DEEP_QUESTIONS: NextDrill(
        title="60s Deep Questions Drill",
        rule="Ask 2 fear/driver questions and pause.",
        script=(
            'Ask: "What are you most worried about with buying?" (pause)\n'
            'Then: "What would make you feel confident saying yes?" (pause)'
        ),
    ),
    SessionPhase.CLOSE: NextDrill(
        title="60s Close Drill - Commit to Next Step",
        rule="Offer a binary next-step choice.",
        script=(
            'Say: "Best next step is approval + a short list."\n'
            'Ask: "Do you want to talk to a lender today, or tomorrow?"'
        ),
    ),
    SessionPhase.RAPPORT: NextDrill(
        title="60s Rapport Drill - Calm Control",
        rule="Set agenda + mirror once.",
        script=(
            'Say: "Glad we\'re talking. What made you start looking now?" (pause)\n'
            "Mirror their key phrase once.\n"
            'Then: "I\'ll ask a few quick questions, then I\'ll map the best next step."'
        ),
    ),
}

GRADE_SCORES: Mapping[str, int] = _freeze(
    {
        "A+": 100, "A": 95, "A-": 92,
        "B+": 88, "B": 85, "B-": 82,
        "C+": 78, "C": 75, "C-": 72,
        "D": 65, "F": 50,
    }
)


@dataclass(frozen=True)
class ScoringTables:
    base_score: int = 50
    turn_bonuses: Tuple[Tuple[int, int], ...] = ((2, 10), (4, 5))
    points_per_question: int = 6
    max_question_points: int = 24
    # (average length above, penalty); the largest matching band applies alone
    length_penalties: Tuple[Tuple[int, int], ...] = ((400, 15), (260, 10))
    buyer_dominance_margin: int = 3
    buyer_dominance_penalty: int = 12
    grade_bands: Tuple[Tuple[int, str], ...] = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))
    failing_grade: str = "F"
    # one-step compliance downgrade; grades not listed are left alone
    compliance_downgrade: Mapping[str, str] = field(
        default_factory=lambda: _freeze({"A": "B", "B": "C"})
    )
    phase_bonuses: Mapping[SessionPhase, Tuple[PhaseBonus, ...]] = field(
        default_factory=lambda: _freeze(_PHASE_BONUSES)
    )
    next_drills: Mapping[SessionPhase, NextDrill] = field(
        default_factory=lambda: _freeze(_NEXT_DRILLS)
    )
    grade_scores: Mapping[str, int] = field(default_factory=lambda: GRADE_SCORES)
    unknown_grade_score: int = 75


DEFAULT_BEHAVIOR_TABLES: BehaviorTables = build_behavior_tables()
DEFAULT_PHASE_TABLES: PhaseTables = build_phase_tables()
DEFAULT_SCORING_TABLES: ScoringTables = ScoringTables()


def grade_to_score(grade: Optional[str], tables: ScoringTables = DEFAULT_SCORING_TABLES) -> int:
    """
    Numeric score for a letter grade, used when only a grade is available.
    """
    if not grade:
        return tables.unknown_grade_score
    return tables.grade_scores.get(grade.strip().upper(), tables.unknown_grade_score)

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .config import get_int, get_max_tokens_for_agent, get_model_for_agent, get_temperature_for_agent
from .llm import chat_completion, is_rate_limit_error
from .models import BuyerProfile, SessionPhase, TranscriptEntry
from .prompts import read_prompt

SESSION_START = "[SESSION_START]"

_OPENING_INSTRUCTION = (
    "[SESSION_START] - You are the buyer initiating the conversation. "
    "Give a natural opening greeting based on your personality."
)

_FALLBACK_GREETINGS: Dict[str, Tuple[str, ...]] = {
    "friendly": (
        "Hi! I heard good things about you and I'm looking to buy my first home.",
        "Hey there! Thanks for taking the time to meet with me. I'm excited to start looking for a home.",
    ),
    "cautious": (
        "Hello. I'm interested in buying a home and wanted to ask you some questions first.",
        "Hi. I've been researching the market and thought I should talk to an agent.",
    ),
    "dominant": (
        "Let's cut to it - I'm looking for a home and I want to know why I should work with you.",
        "I'm interviewing a few agents. Tell me what makes you different.",
    ),
    "distracted": (
        "Hey, sorry I only have a few minutes but I wanted to talk about finding a place.",
        "Hi - hold on one sec - okay, I'm here. So I need to find a house.",
    ),
    "nervous": (
        "Hi... um, I'm not really sure how this works but I'm thinking about buying a home?",
        "Hello. This is my first time doing this and I'm a little nervous honestly.",
    ),
    "skeptical": (
        "I'm calling around to interview agents. Tell me why you're different from everyone else.",
        "So I've heard a lot about agents just trying to close deals. How do I know you're different?",
    ),
}

_FALLBACK_REPLIES: Dict[str, Tuple[str, ...]] = {
    "friendly": (
        "That's interesting! Can you tell me more about that?",
        "I appreciate you explaining that. What else should I know?",
        "Oh nice! So what would be the next step?",
    ),
    "cautious": (
        "I see. And how would that work exactly?",
        "Interesting. Can you give me more details on that?",
        "I'd like to understand that better before we move on.",
    ),
    "dominant": (
        "Get to the point. What's the bottom line here?",
        "I need specifics, not generalities. What exactly are we looking at?",
        "Okay, but what does that mean for me specifically?",
    ),
    "distracted": (
        "Sorry, what was that? I got distracted for a second.",
        "Right, right. So what's the main thing I need to focus on?",
        "Can you give me the quick version?",
    ),
    "nervous": (
        "That makes sense... I think. Is that normal?",
        "Okay... that's a lot to process. What if something goes wrong?",
        "I'm still worried about making a mistake here.",
    ),
    "skeptical": (
        "Everyone says that. Can you prove it?",
        "How do I know that's actually true?",
        "I've heard that before from other agents.",
    ),
}


def fallback_response(
    personality: str,
    session_start: bool = False,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Canned buyer line used when the model provider is throttling us.
    """
    table = _FALLBACK_GREETINGS if session_start else _FALLBACK_REPLIES
    options = table.get(personality) or table["cautious"]
    return (rng or random).choice(options)


def phase_guidance(phase: SessionPhase) -> str:
    return read_prompt("buyer_phase_guidance", SessionPhase(phase).value, "").strip()


def build_buyer_system_prompt(profile: BuyerProfile, difficulty: str = "intermediate") -> str:
    """
    Compose the in-character system prompt from the shared header and the
    per-dimension modifiers in prompts.yaml.
    """
    experience = profile.experience_level.replace("_", " ")
    header = read_prompt("simulated_buyer", "header", "").strip()
    behavior = (
        "YOUR BEHAVIOR:\n"
        f"- Ask realistic questions a {experience} buyer would ask\n"
        f"- Create {profile.resistance_level} pressure and objections\n"
        "- Interrupt occasionally if the agent rambles or loses control\n"
        "- Test the agent's confidence and structure\n"
        "- Expose weak sales skills naturally through your reactions"
    )
    profile_block = (
        "YOUR PROFILE:\n"
        f"- Experience: {experience}\n"
        f"- Emotional State: {profile.emotional_state}\n"
        f"- Financial Comfort: {profile.financial_comfort}\n"
        f"- Resistance Level: {profile.resistance_level}\n"
        f"- Question Depth: {profile.question_depth}\n"
        f"- Personality: {profile.personality}"
    )
    triggers = (
        "INTERRUPTION TRIGGERS - Cut in immediately if agent:\n"
        "- Rambles for more than 2 sentences without asking a question\n"
        "- Sounds unprofessional or uncertain\n"
        "- Avoids your direct financial questions\n"
        "- Over-explains instead of leading the conversation"
    )
    modifiers = [
        read_prompt("buyer_difficulty", difficulty, read_prompt("buyer_difficulty", "intermediate")),
        read_prompt("buyer_personality", profile.personality, ""),
        read_prompt("buyer_emotional_state", profile.emotional_state, ""),
        read_prompt("buyer_financial_comfort", profile.financial_comfort, ""),
        read_prompt("buyer_experience", profile.experience_level, ""),
    ]
    sections = [
        header,
        behavior,
        profile_block,
        triggers,
        read_prompt("simulated_buyer", "response_style", "").strip(),
        *(m.strip() for m in modifiers),
        read_prompt("simulated_buyer", "opening", "").strip(),
    ]
    return "\n\n".join(s for s in sections if s)


@dataclass
class SimulatedBuyerAgent:
    """
    LLM-backed buyer for one session. Stateless across turns: the caller
    passes the conversation history each time.
    """

    profile: BuyerProfile
    difficulty: str = "intermediate"
    model: str = get_model_for_agent("simulated_buyer", "openai/gpt-4o")
    max_tokens: int = get_max_tokens_for_agent("simulated_buyer", 300)
    temperature: float = get_temperature_for_agent("simulated_buyer", 0.8)
    history_window: int = get_int("behavior", "history_window", 10)
    rng: Optional[random.Random] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self._system_prompt = build_buyer_system_prompt(self.profile, self.difficulty)

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    def build_messages(
        self,
        user_message: str,
        history: Sequence[TranscriptEntry],
        phase: SessionPhase,
    ) -> List[Dict[str, str]]:
        session_start = user_message.strip() == SESSION_START
        messages = [
            {
                "role": "system",
                "content": f"{self._system_prompt}\n\n## CURRENT PHASE GUIDANCE\n{phase_guidance(phase)}",
            }
        ]
        if not session_start:
            for entry in list(history)[-self.history_window :]:
                messages.append(
                    {"role": "user" if entry.is_trainee else "assistant", "content": entry.content}
                )
        messages.append(
            {"role": "user", "content": _OPENING_INSTRUCTION if session_start else user_message}
        )
        return messages

    def reply(
        self,
        user_message: str,
        history: Sequence[TranscriptEntry] = (),
        phase: SessionPhase = SessionPhase.RAPPORT,
    ) -> str:
        messages = self.build_messages(user_message, history, phase)
        try:
            return chat_completion(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            ).strip()
        except Exception as e:
            if not is_rate_limit_error(e):
                raise
            logger.warning(f"Buyer model throttled ({e}); using fallback line")
            return fallback_response(
                self.profile.personality,
                session_start=user_message.strip() == SESSION_START,
                rng=self.rng,
            )

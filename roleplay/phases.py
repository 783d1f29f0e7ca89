from __future__ import annotations

from dataclasses import dataclass, field

from .models import PhaseAdvance, SessionPhase
from .tables import DEFAULT_PHASE_TABLES, PhaseTables


@dataclass(frozen=True)
class PhaseController:
    """
    Decides when a roleplay moves to its next stage.

    Stateless: the caller passes the number of transcript entries recorded
    since the session started (or since the last advancement) and the most
    recent utterance text.
    """

    tables: PhaseTables = field(default=DEFAULT_PHASE_TABLES)

    def advance(
        self,
        current_phase: SessionPhase,
        transcript_length: int,
        recent_text: str,
    ) -> PhaseAdvance:
        current_phase = SessionPhase(current_phase)
        if current_phase.is_terminal:
            return PhaseAdvance(should_advance=False)

        if transcript_length < self.tables.min_messages:
            return PhaseAdvance(should_advance=False)

        phrases = self.tables.completion_phrases.get(current_phase, ())
        text = (recent_text or "").lower()
        if any(phrase in text for phrase in phrases):
            return PhaseAdvance(should_advance=True, next_phase=current_phase.next_phase())

        return PhaseAdvance(should_advance=False)

    def force_advance(self, current_phase: SessionPhase) -> PhaseAdvance:
        """
        Manual advance requested by the trainee. Skips the phrase and
        message-count checks but never moves past `close`.
        """
        current_phase = SessionPhase(current_phase)
        if current_phase.is_terminal:
            return PhaseAdvance(should_advance=False)
        return PhaseAdvance(should_advance=True, next_phase=current_phase.next_phase())

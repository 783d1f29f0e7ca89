"""
Roleplay: session orchestration and scoring for sales-conversation training.

Modules map onto the per-turn and end-of-session flow:

- `phases` → transcript progress → next conversation stage
- `buyer_behavior` → conversation signals → interruption and emotional tone
- `compliance` → trainee utterance → rule violations (plus optional model pass)
- `scoring` → finished turns → CoachReport with grade gating
- `analysis` → transcript → merged SessionReport (heuristic + time-boxed qualitative pass)
- `simulated_buyer` → persona + history → in-character buyer reply
"""

from .analysis import QualitativeAnalyzer, SessionAnalysisOrchestrator, default_feedback
from .buyer_behavior import PersonaBehaviorModel
from .compliance import ComplianceEngine
from .models import BuyerProfile, CoachReport, SessionPhase, SessionReport, TranscriptEntry
from .phases import PhaseController
from .scoring import ScoringEngine
from .simulated_buyer import SimulatedBuyerAgent

__all__ = [
    "BuyerProfile",
    "CoachReport",
    "SessionPhase",
    "SessionReport",
    "TranscriptEntry",
    "PhaseController",
    "PersonaBehaviorModel",
    "ComplianceEngine",
    "ScoringEngine",
    "QualitativeAnalyzer",
    "SessionAnalysisOrchestrator",
    "default_feedback",
    "SimulatedBuyerAgent",
]

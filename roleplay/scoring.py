from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .compliance import ComplianceEngine, compliance_pass
from .models import CoachReport, CoachTurn, ComplianceViolation, SessionPhase
from .tables import DEFAULT_SCORING_TABLES, PhaseBonus, ScoringTables


def _normalize(text: str) -> str:
    return (text or "").replace("’", "'").replace("‘", "'").lower()


def _includes_any(haystack: str, needles: Sequence[str]) -> bool:
    return any(needle in haystack for needle in needles)


def _clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, value))


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ScoringEngine:
    """
    Deterministic heuristic scorer for a finished (or in-progress) session.

    Every phase is scored against the full turn list; the phase only decides
    which bonus table applies.
    """

    tables: ScoringTables = field(default=DEFAULT_SCORING_TABLES)
    compliance: ComplianceEngine = field(default_factory=ComplianceEngine)

    def score_phase(self, phase: SessionPhase, turns: Sequence[CoachTurn]) -> int:
        t = self.tables
        agent = [turn for turn in turns if turn.speaker == "agent"]
        buyer_count = len(turns) - len(agent)
        agent_text = _normalize(" ".join(turn.text for turn in agent))
        avg_len = sum(len(turn.text) for turn in agent) / len(agent) if agent else 0.0
        questions = agent_text.count("?")

        score = t.base_score
        for min_turns, points in t.turn_bonuses:
            if len(agent) >= min_turns:
                score += points
        score += min(t.max_question_points, questions * t.points_per_question)

        for threshold, penalty in t.length_penalties:
            if avg_len > threshold:
                score -= penalty
                break

        for bonus in t.phase_bonuses.get(phase, ()):
            if self._bonus_applies(bonus, agent_text, questions):
                score += bonus.points

        if buyer_count > len(agent) + t.buyer_dominance_margin:
            score -= t.buyer_dominance_penalty
        return _clamp(score)

    @staticmethod
    def _bonus_applies(bonus: PhaseBonus, agent_text: str, questions: int) -> bool:
        if questions < bonus.min_questions:
            return False
        return not bonus.keywords or _includes_any(agent_text, bonus.keywords)

    def grade_for(self, score: int) -> str:
        for floor, grade in self.tables.grade_bands:
            if score >= floor:
                return grade
        return self.tables.failing_grade

    def gate(self, grade: str, passed: bool) -> str:
        """Apply the compliance cap: exactly one step down, A and B only."""
        if passed:
            return grade
        return self.tables.compliance_downgrade.get(grade, grade)

    def best_and_worst(self, phase_scores: Dict[SessionPhase, int]) -> Tuple[SessionPhase, SessionPhase]:
        # max()/min() return the first extreme, so ties favor the earlier phase
        phases = [p for p in SessionPhase.order() if p in phase_scores]
        best = max(phases, key=lambda p: phase_scores[p])
        worst = min(phases, key=lambda p: phase_scores[p])
        return best, worst

    def score(
        self,
        turns: Sequence[CoachTurn],
        violations: Optional[Sequence[ComplianceViolation]] = None,
    ) -> CoachReport:
        """
        Build a CoachReport. Pattern violations are derived from the agent
        turns unless the caller already has them.
        """
        agent_turns = [turn for turn in turns if turn.speaker == "agent"]
        if violations is None:
            found: List[ComplianceViolation] = []
            for index, turn in enumerate(turns):
                if turn.speaker == "agent":
                    found.extend(self.compliance.scan(turn.text, index, turn.ts))
            violations = found
        disclosures = self.compliance.check_required_disclosures(
            " ".join(turn.text for turn in agent_turns)
        )
        passed = compliance_pass(violations)

        by_phase = {phase: self.score_phase(phase, turns) for phase in SessionPhase.order()}
        overall = _clamp(_round_half_up(sum(by_phase.values()) / len(by_phase)))
        grade = self.gate(self.grade_for(overall), passed)
        best, worst = self.best_and_worst(by_phase)

        strengths = [f"Strongest phase: {best.value} ({by_phase[best]}/100)."]
        improvements = [f"Biggest opportunity: {worst.value} ({by_phase[worst]}/100)."]
        if passed:
            strengths.append("Compliance: no prohibited language detected.")
        else:
            improvements.append(
                "Compliance issue: remove promises, steering or advice outside your license."
            )
        if disclosures:
            improvements.append(
                "Add required disclosures early (before tours / before specifics)."
            )

        summary = (
            f"Score {overall}/100 • Grade {grade} • Compliance {'PASS' if passed else 'FAIL'}.\n"
            f"Best: {best.value} • Needs work: {worst.value}."
        )

        return CoachReport(
            phase_scores={phase.value: value for phase, value in by_phase.items()},
            overall_score=overall,
            grade=grade,
            compliance_pass=passed,
            compliance_flags=self.compliance.flags([*violations, *disclosures]),
            strengths=strengths,
            improvements=improvements,
            next_drill=self.tables.next_drills[worst],
            best_phase=best,
            worst_phase=worst,
            summary=summary,
        )

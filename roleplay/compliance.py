from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Pattern, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel

from .config import get_model_for_agent, get_max_tokens_for_agent
from .json_utils import coerce_json_object
from .llm import chat_completion
from .models import (
    COMPLIANCE_CATEGORIES,
    SEVERITIES,
    ComplianceCategory,
    ComplianceFlag,
    ComplianceViolation,
    Severity,
    TranscriptEntry,
)
from .prompts import read_prompt


def _patterns(*sources: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(source, re.IGNORECASE) for source in sources)


def _normalize(text: str) -> str:
    # Speech-to-text and rich editors emit curly apostrophes.
    return (text or "").replace("’", "'").replace("‘", "'")


@dataclass(frozen=True)
class ComplianceRule:
    """
    One prohibited-language rule. Patterns are tried in order and the first
    hit produces the rule's single violation.
    """

    key: str
    category: ComplianceCategory
    severity: Severity
    patterns: Tuple[Pattern[str], ...]
    description: str
    suggestion: str

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


@dataclass(frozen=True)
class RequiredDisclosure:
    """
    Language the trainee is expected to use at least once per session.
    """

    key: str
    label: str
    keywords: Tuple[str, ...]
    detail: str
    suggestion: str


# Nevada real estate rules, evaluated category by category in this order.
COMPLIANCE_RULES: Tuple[ComplianceRule, ...] = (
    ComplianceRule(
        key="appreciation",
        category="promises",
        severity="critical",
        patterns=_patterns(
            r"home values? (will|always|definitely|guaranteed to) (go up|increase|appreciate|rise)",
            r"guaranteed (return|profit|appreciation)",
            r"can't lose (money|value)",
            r"always goes? up",
            r"never (lose|go down|depreciate)",
        ),
        description="Cannot guarantee property appreciation",
        suggestion="Never promise home values will increase. Say 'historically' or 'may' instead",
    ),
    ComplianceRule(
        key="returns",
        category="promises",
        severity="critical",
        patterns=_patterns(
            r"guaranteed (income|rental|cash flow)",
            r"will definitely (rent|make money)",
            r"can't fail",
        ),
        description="Cannot guarantee investment returns",
        suggestion="Use phrases like 'potential' or 'based on current market'",
    ),
    ComplianceRule(
        key="protected_classes",
        category="fair_housing",
        severity="critical",
        patterns=_patterns(
            r"good (neighborhood|area|school) for (families like yours|people like you|your kind)",
            r"you (probably )?would(n't)? fit in",
            r"(not|less) safe for (you|your family|people like you)",
            r"better suited for (different|other|certain) (people|families)",
        ),
        description="Fair Housing Act prohibits discrimination",
        suggestion="Never steer clients based on protected class characteristics",
    ),
    ComplianceRule(
        key="steering",
        category="fair_housing",
        severity="warning",
        patterns=_patterns(
            r"you (should|might want to) (look|live) in",
            r"this area is (mostly|predominantly|mainly)",
            r"people like you (usually|typically|often)",
        ),
        description="Avoid steering clients to specific areas",
        suggestion="Let clients choose areas based on their stated preferences",
    ),
    ComplianceRule(
        key="legal_advice",
        category="licensing",
        severity="warning",
        patterns=_patterns(
            r"you (should|must) sign",
            r"the contract (means|says that you)",
            r"legally (you have to|required)",
            r"my legal advice",
        ),
        description="Agents cannot provide legal advice",
        suggestion="Recommend the client consult with an attorney for legal questions",
    ),
    ComplianceRule(
        key="financial_advice",
        category="licensing",
        severity="info",
        patterns=_patterns(
            r"you should (put|invest|save)",
            r"best (investment|financial) (decision|choice)",
            r"financially you should",
        ),
        description="Agents should not provide financial advice",
        suggestion="Recommend the client consult with a financial advisor",
    ),
    ComplianceRule(
        key="misrepresentation",
        category="ethics",
        severity="critical",
        patterns=_patterns(
            r"don't worry about (disclosure|telling)",
            r"no one will know",
            r"we can skip",
            r"between us",
        ),
        description="Agents must not misrepresent or conceal material facts",
        suggestion="Always be transparent and honest with all parties",
    ),
    ComplianceRule(
        key="dual_agency",
        category="ethics",
        severity="info",
        patterns=_patterns(
            r"represent both",
            r"work with both",
            r"help the seller too",
        ),
        description="Dual agency requires disclosure and consent",
        suggestion="Explain dual agency implications and get written consent if applicable",
    ),
    ComplianceRule(
        key="paperwork_shortcuts",
        category="ethics",
        severity="critical",
        patterns=_patterns(
            r"skip the paperwork",
            r"just sign it",
            r"don't worry about the forms",
        ),
        description="Agents must not rush clients past required paperwork",
        suggestion="Walk through every form before anything is signed",
    ),
    ComplianceRule(
        key="compensation_misstatement",
        category="ethics",
        severity="critical",
        patterns=_patterns(
            r"\bi'm free\b",
            r"i work for free",
            r"you don't pay me",
        ),
        description="Agent compensation must not be misstated",
        suggestion=(
            "Quick clarity: my compensation depends on the agreement and the transaction. "
            "I will explain it clearly before anything is signed."
        ),
    ),
)

REQUIRED_DISCLOSURES: Tuple[RequiredDisclosure, ...] = (
    RequiredDisclosure(
        key="buyer_broker_representation",
        label="Buyer Broker / Representation disclosed",
        keywords=(
            "buyer broker",
            "buyer-broker",
            "broker agreement",
            "representation",
            "represent you",
        ),
        detail="Missing mention of buyer-broker/representation.",
        suggestion="Explain who you represent and your duties to the buyer",
    ),
    RequiredDisclosure(
        key="duties_owed",
        label="Duties Owed / Agency disclosure",
        keywords=("duties owed", "agency", "fiduciary", "agency disclosure"),
        detail="Missing mention of duties owed / agency disclosure.",
        suggestion="Disclose the agency relationship and the duties you owe early in the conversation",
    ),
)


def compliance_pass(violations: Iterable[ComplianceViolation]) -> bool:
    """
    Gate used by scoring: only pattern-detected, non-advisory violations
    fail it. Disclosure reminders and AI-reported issues never do.
    """
    return not any(
        v.source == "pattern" and v.category != "disclosure" for v in violations
    )


def validate_external(raw: Any, transcript_index: Optional[int] = None) -> List[ComplianceViolation]:
    """
    Keep the well-formed entries of a violation list produced elsewhere
    (usually a model). Entries missing a required field are dropped.
    """
    if isinstance(raw, dict):
        raw = raw.get("violations", [])
    if not isinstance(raw, list):
        return []

    accepted: List[ComplianceViolation] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        severity = item.get("severity")
        category = item.get("category")
        message = item.get("message")
        suggestion = item.get("suggestion")
        if severity not in SEVERITIES or category not in COMPLIANCE_CATEGORIES:
            continue
        if not isinstance(message, str) or not message.strip():
            continue
        if not isinstance(suggestion, str) or not suggestion.strip():
            continue
        index = item.get("transcriptIndex", item.get("transcript_index", transcript_index))
        accepted.append(
            ComplianceViolation(
                id=f"ai.{category}:{index}:{len(accepted)}",
                rule=f"ai_{category}",
                severity=severity,
                category=category,
                message=message.strip(),
                suggestion=suggestion.strip(),
                transcript_index=index if isinstance(index, int) else transcript_index,
                source="ai",
            )
        )
    return accepted


def merge(
    pattern_violations: Sequence[ComplianceViolation],
    external_violations: Sequence[ComplianceViolation],
) -> List[ComplianceViolation]:
    return [*pattern_violations, *external_violations]


@dataclass(frozen=True)
class ComplianceEngine:
    """
    Pattern-based compliance scanner for trainee utterances.
    """

    rules: Tuple[ComplianceRule, ...] = field(default=COMPLIANCE_RULES)
    required_disclosures: Tuple[RequiredDisclosure, ...] = field(default=REQUIRED_DISCLOSURES)

    def scan(
        self,
        text: str,
        transcript_index: Optional[int] = None,
        timestamp: Optional[float] = None,
    ) -> List[ComplianceViolation]:
        normalized = _normalize(text)
        return [
            ComplianceViolation(
                id=f"{rule.category}.{rule.key}:{transcript_index}",
                rule=rule.key,
                severity=rule.severity,
                category=rule.category,
                message=rule.description,
                suggestion=rule.suggestion,
                transcript_index=transcript_index,
                timestamp=timestamp,
            )
            for rule in self.rules
            if rule.matches(normalized)
        ]

    def scan_transcript(self, entries: Sequence[TranscriptEntry]) -> List[ComplianceViolation]:
        """
        Scan every trainee entry, tagging violations with their transcript index.
        """
        found: List[ComplianceViolation] = []
        for index, entry in enumerate(entries):
            if entry.is_trainee:
                found.extend(self.scan(entry.content, index, entry.timestamp))
        return found

    def check_required_disclosures(self, trainee_text: str) -> List[ComplianceViolation]:
        text = _normalize(trainee_text).lower()
        return [
            ComplianceViolation(
                id=f"disclosure.{disclosure.key}",
                rule=disclosure.key,
                severity="info",
                category="disclosure",
                message=disclosure.detail,
                suggestion=disclosure.suggestion,
            )
            for disclosure in self.required_disclosures
            if not any(keyword in text for keyword in disclosure.keywords)
        ]

    def flags(self, violations: Iterable[ComplianceViolation]) -> List[ComplianceFlag]:
        labels = {d.key: d.label for d in self.required_disclosures}
        return [
            ComplianceFlag(
                rule=labels.get(v.rule, v.rule),
                category=v.category,
                severity=v.severity,
                detail=v.message,
                ts=v.timestamp,
                advisory=v.category == "disclosure",
            )
            for v in violations
        ]


COMPLIANCE_CHECK_PROMPT = read_prompt("compliance_check", "system_prompt", "")


@dataclass
class AIComplianceChecker:
    """
    Optional model-assisted pass that supplements the pattern rules. Any
    failure yields no violations; the pattern result always stands alone.
    """

    model: str = get_model_for_agent("compliance_check", "openai/gpt-4o-mini")
    max_tokens: int = get_max_tokens_for_agent("compliance_check", 600)

    def check(self, message: str, transcript_index: Optional[int] = None) -> List[ComplianceViolation]:
        if not message.strip():
            return []
        try:
            content = chat_completion(
                model=self.model,
                messages=[
                    {"role": "system", "content": COMPLIANCE_CHECK_PROMPT},
                    {"role": "user", "content": json.dumps({"statement": message})},
                ],
                response_format={"type": "json_object"},
                max_tokens=self.max_tokens,
                temperature=0.0,
            )
            data = coerce_json_object(content)
        except Exception as e:
            logger.debug(f"AI compliance check dropped: {e}")
            return []
        return validate_external(data, transcript_index)


class ComplianceEducation(BaseModel):
    title: str
    description: str
    examples: List[str]
    resources: List[str]


_EDUCATION = {
    "disclosure": ComplianceEducation(
        title="Disclosure Requirements",
        description="Nevada law requires agents to disclose material facts and agency relationships.",
        examples=[
            "Disclosing your agency relationship at first substantive contact",
            "Revealing known property defects",
            "Explaining commission structures when asked",
        ],
        resources=[
            "NRS 645.252 - Duties of licensees",
            "NAC 645.637 - Agency disclosure requirements",
        ],
    ),
    "fair_housing": ComplianceEducation(
        title="Fair Housing Act Compliance",
        description="Federal and state laws prohibit discrimination based on protected classes.",
        examples=[
            "Never suggest a neighborhood based on race or religion",
            "Don't assume family needs based on protected characteristics",
            "Show all available properties regardless of client demographics",
        ],
        resources=[
            "Fair Housing Act (42 U.S.C. 3601-3619)",
            "NRS 118.010-118.120 - Nevada Fair Housing Law",
        ],
    ),
    "licensing": ComplianceEducation(
        title="Scope of Practice",
        description="Agents must stay within their licensed scope of practice.",
        examples=[
            "Refer legal questions to attorneys",
            "Refer tax questions to CPAs",
            "Refer financial planning to licensed advisors",
        ],
        resources=[
            "NRS 645.030 - Acts requiring license",
            "NAC 645.605 - Prohibited conduct",
        ],
    ),
    "promises": ComplianceEducation(
        title="Prohibited Promises",
        description="Agents cannot guarantee investment outcomes or property appreciation.",
        examples=[
            "Don't say 'values always go up'",
            "Don't promise specific rental income",
            "Use 'may,' 'historically,' or 'potential' language",
        ],
        resources=[
            "NAC 645.610 - Misrepresentation",
            "Nevada Real Estate Division guidelines",
        ],
    ),
    "ethics": ComplianceEducation(
        title="Ethical Conduct",
        description="Agents must act with honesty and integrity in all transactions.",
        examples=[
            "Always tell the truth",
            "Disclose conflicts of interest",
            "Put client interests first",
        ],
        resources=[
            "NAR Code of Ethics",
            "NRS 645.630 - Grounds for disciplinary action",
        ],
    ),
}


def education(category: str) -> Optional[ComplianceEducation]:
    return _EDUCATION.get(category)

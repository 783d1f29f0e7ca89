import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from roleplay.models import CoachTurn


FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def buyer_profile() -> Dict[str, Any]:
    return {
        "experienceLevel": "first_time",
        "emotionalState": "excited",
        "financialComfort": "unclear",
        "resistanceLevel": "medium",
        "questionDepth": "mixed",
        "personality": "dominant",
    }


@pytest.fixture
def coach_turns() -> List[CoachTurn]:
    data = json.loads((FIXTURES / "coach_session.json").read_text(encoding="utf-8"))
    return [CoachTurn.model_validate(t) for t in data["turns"]]

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml


DEFAULT_PROMPTS_PATH: Path = Path(__file__).with_name("prompts.yaml")


def _prompts_path() -> Path:
    """
    Resolve prompts.yaml path from env or default beside this module.
    """
    env_path = os.environ.get("ROLEPLAY_PROMPTS_PATH")
    return Path(env_path) if env_path else DEFAULT_PROMPTS_PATH


@lru_cache(maxsize=4)
def _load_cached(path: str) -> Dict[str, Any]:
    return load_prompts(Path(path))


def load_prompts(path: Path | None = None) -> Dict[str, Any]:
    """
    Load the YAML file containing prompts. Returns {} if missing/empty.
    """
    p = path or _prompts_path()
    if not p.exists():
        return {}
    text = p.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    data = yaml.safe_load(text)
    return data or {}


def read_prompt(section: str, key: str, default: str = "") -> str:
    """
    Read a single prompt entry as text with a default.
    """
    data = _load_cached(str(_prompts_path()))
    sec = data.get(section, {}) or {}
    value = sec.get(key, default)
    return str(value) if value is not None else default

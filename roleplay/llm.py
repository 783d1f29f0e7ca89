from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import litellm
from dotenv import load_dotenv

load_dotenv()

# Normalize common aliases so stray un-prefixed model names still resolve.
litellm.model_alias_map = {
    "gpt-4o": "openai/gpt-4o",
    "gpt-4o-mini": "openai/gpt-4o-mini",
}


def _build_kwargs(
    *,
    model: str,
    messages: List[Dict[str, str]],
    max_tokens: Optional[int],
    temperature: Optional[float],
    response_format: Optional[Dict[str, Any]],
    api_key: Optional[str],
) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {
        "model": model,
        "messages": messages,
    }
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    if temperature is not None:
        kwargs["temperature"] = temperature
    if response_format is not None:
        kwargs["response_format"] = response_format

    openai_key = api_key or os.environ.get("OPENAI_API_KEY")
    if openai_key and (model.startswith("openai") or model.startswith("gpt-")):
        kwargs["api_key"] = openai_key
    elif api_key:
        kwargs["api_key"] = api_key
    return kwargs


def _message_content(completion: Any) -> str:
    choice = completion.choices[0]
    message = getattr(choice, "message", None)
    if isinstance(message, dict):
        return message.get("content", "") or ""
    return getattr(message, "content", "") or ""


def is_rate_limit_error(error: BaseException) -> bool:
    """
    True when a provider error means quota exhaustion or throttling.
    """
    if isinstance(error, litellm.exceptions.RateLimitError):
        return True
    text = str(error).lower()
    return "429" in text or "quota" in text or "rate limit" in text


def chat_completion(
    *,
    model: str,
    messages: List[Dict[str, str]],
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
    response_format: Optional[Dict[str, Any]] = None,
    api_key: Optional[str] = None,
) -> str:
    """
    Thin wrapper around LiteLLM's completion API.

    The simulated buyer and the compliance checker go through here so the
    provider can be swapped with config alone.
    """

    kwargs = _build_kwargs(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature,
        response_format=response_format,
        api_key=api_key,
    )
    try:
        completion = litellm.completion(**kwargs)
    except litellm.exceptions.BadRequestError:
        # Some providers reject response_format; retry once without it.
        if "response_format" not in kwargs:
            raise
        kwargs.pop("response_format", None)
        completion = litellm.completion(**kwargs)
    return _message_content(completion)


async def achat_completion(
    *,
    model: str,
    messages: List[Dict[str, str]],
    max_tokens: Optional[int] = None,
    temperature: Optional[float] = None,
    response_format: Optional[Dict[str, Any]] = None,
    api_key: Optional[str] = None,
) -> str:
    """
    Async twin of chat_completion, used where the caller races a timeout.
    """

    kwargs = _build_kwargs(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature,
        response_format=response_format,
        api_key=api_key,
    )
    try:
        completion = await litellm.acompletion(**kwargs)
    except litellm.exceptions.BadRequestError:
        if "response_format" not in kwargs:
            raise
        kwargs.pop("response_format", None)
        completion = await litellm.acompletion(**kwargs)
    return _message_content(completion)

from __future__ import annotations

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

from chat_assembler.models import ChatRequest, Usage

_MAX_ATTEMPTS = 5


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/{_MAX_ATTEMPTS})...")


def default_retry_kwargs(exception_types: tuple[type[Exception], ...]) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=2, min=2, max=60),
        "stop": stop_after_attempt(_MAX_ATTEMPTS),
        "before_sleep": _on_retry,
        "reraise": True,
    }


def usage_from_counts(prompt: int | None, completion: int | None, total: int | None = None) -> Usage | None:
    usage = Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
    return None if usage.is_empty else usage


def openai_style_kwargs(request: ChatRequest) -> dict:
    """Build chat-completions keyword arguments; unset limits are omitted."""
    kwargs: dict = {"model": request.model, "messages": request.messages}
    if request.max_tokens:
        kwargs["max_tokens"] = request.max_tokens
    if request.temperature:
        kwargs["temperature"] = request.temperature
    return kwargs

"""Primary-with-fallback combinator for optional LLM-backed steps."""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FallbackResult(Generic[T]):
    value: T
    used_fallback: bool = False
    reason: Optional[str] = None


async def with_fallback(
    primary: Callable[[], Awaitable[T]],
    fallback: Callable[[], Awaitable[T]],
    *,
    label: str,
    accept: Optional[Callable[[T], Optional[str]]] = None,
) -> FallbackResult[T]:
    """
    Run ``primary``; run ``fallback`` if it raises or its result is rejected.

    ``accept`` returns None for a usable result, or a reason string to reject
    it. The fallback itself is not guarded: its errors propagate.
    """
    reason: Optional[str] = None
    try:
        value = await primary()
        reason = accept(value) if accept else None
        if reason is None:
            return FallbackResult(value=value)
    except Exception as e:
        reason = f"{type(e).__name__}: {e}"

    logger.warning(f"{label} falling back: {reason}")
    return FallbackResult(value=await fallback(), used_fallback=True, reason=reason)

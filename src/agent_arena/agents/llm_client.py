"""
OpenRouter LLM client for arena decisions, commentary and roster generation.

Calls the OpenRouter chat-completions API over aiohttp, reports token usage
with every completion and prices it from the model pricing table.
"""

import os
import re
import json
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

logger = logging.getLogger(__name__)

# USD per one million tokens (input, output)
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-5-nano": {"input": 0.10, "output": 0.40},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
}
DEFAULT_PRICING_MODEL = "gpt-4o-mini"
CHARS_PER_TOKEN = 4
OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class LLMError(Exception):
    """The completion service failed or returned an unusable response."""


@dataclass(frozen=True)
class Completion:
    text: str
    tokens_in: int
    tokens_out: int
    structured: Optional[Dict[str, Any]] = None


class LLMClient(Protocol):
    async def complete(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        *,
        model: str,
        system: Optional[str] = None,
        max_tokens: int = 400,
        temperature: float = 0.4,
    ) -> Completion:
        ...


def _pricing_for(model: str) -> Dict[str, float]:
    name = model.split("/")[-1]
    return MODEL_PRICING.get(name, MODEL_PRICING[DEFAULT_PRICING_MODEL])


def estimate_cost(model: str, tokens_in: int, tokens_out: int) -> float:
    """Cost in USD of a call with the given token counts."""
    pricing = _pricing_for(model)
    return tokens_in / 1_000_000 * pricing["input"] + tokens_out / 1_000_000 * pricing["output"]


def estimate_tokens(text: str) -> int:
    """Rough token count, rounded up; empty text is free."""
    return -(-len(text) // CHARS_PER_TOKEN)


def worst_case_cost(model: str, prompt: str, max_tokens: int, system: str = "") -> float:
    """Upper bound used to reserve budget before a call is made."""
    return estimate_cost(model, estimate_tokens(prompt) + estimate_tokens(system), max_tokens)


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """
    Pull a JSON object out of model output.

    Tries the raw text, then a fenced code block, then the outermost braces.
    """
    if not text:
        return None
    candidates = [text.strip()]
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fenced:
        candidates.append(fenced.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def resolve_model(model: str) -> str:
    """OpenRouter model ids carry a provider prefix."""
    return model if "/" in model else f"openai/{model}"


class OpenRouterClient:
    """
    Chat completions through OpenRouter.

    Rate limits, 5xx answers, timeouts and connection errors are retried with
    a linearly growing delay; other HTTP errors fail immediately.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = OPENROUTER_URL,
        attempts: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
    ):
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY")
        if not self.api_key:
            raise ValueError("OPENROUTER_API_KEY is required for LLM agents, rosters and commentary")

        self.base_url = base_url
        self.attempts = max(1, attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self.calls = 0
        self.failures = 0
        self.tokens_in = 0
        self.tokens_out = 0

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "HTTP-Referer": "https://agent-arena.local",
                    "X-Title": "Agent Arena",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self.session

    async def close(self):
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def chat_completion(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST one chat-completions payload and return the decoded body.

        Raises:
            LLMError: On a non-retryable status, or when every attempt failed
        """
        session = self._ensure_session()
        last_error = "no attempt made"

        for attempt in range(1, self.attempts + 1):
            self.calls += 1
            delay = self.retry_delay * attempt
            try:
                async with session.post(self.base_url, json=payload) as response:
                    if response.status == 200:
                        return await response.json()

                    body = (await response.text())[:300]
                    last_error = f"HTTP {response.status}: {body}"
                    if response.status not in RETRYABLE_STATUSES:
                        self.failures += 1
                        raise LLMError(f"OpenRouter rejected {payload['model']}: {last_error}")
                    if response.status == 429:
                        delay = float(response.headers.get("Retry-After", delay))
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.timeout}s"
            except aiohttp.ClientError as e:
                last_error = f"{type(e).__name__}: {e}"

            self.failures += 1
            logger.warning(f"OpenRouter {payload['model']} attempt {attempt}/{self.attempts}: {last_error}")
            if attempt < self.attempts:
                await asyncio.sleep(delay)

        raise LLMError(f"OpenRouter {payload['model']} failed after {self.attempts} attempts: {last_error}")

    @staticmethod
    def message_text(response: Dict[str, Any]) -> str:
        try:
            return response["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Malformed completion response: {e}") from e

    async def complete(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        *,
        model: str,
        system: Optional[str] = None,
        max_tokens: int = 400,
        temperature: float = 0.4,
    ) -> Completion:
        """
        Single-turn completion with token usage.

        When ``schema`` is given the model is asked for JSON matching it and
        the parsed object is returned as ``structured``.
        """
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        payload: Dict[str, Any] = {
            "model": resolve_model(model),
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": schema.get("title", "response"), "strict": False, "schema": schema},
            }

        response = await self.chat_completion(payload)
        text = self.message_text(response)
        usage = response.get("usage") or {}
        tokens_in = int(usage.get("prompt_tokens") or estimate_tokens((system or "") + prompt))
        tokens_out = int(usage.get("completion_tokens") or estimate_tokens(text))
        self.tokens_in += tokens_in
        self.tokens_out += tokens_out

        return Completion(
            text=text,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            structured=extract_json(text) if schema is not None else None,
        )

    def get_stats(self) -> Dict[str, float]:
        return {
            "calls": self.calls,
            "failures": self.failures,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
        }

"""
Computation delegate: produces the numeric result for one operation.

The LLM calculator is the primary path; local arithmetic covers missing
credentials, explicit disablement and (optionally) provider failures.
"""
from __future__ import annotations
import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from .config import Settings
from .models import OperationType
from .observability import record_fallback, record_llm_call

logger = logging.getLogger(__name__)

OPERATION_NAMES: Dict[str, str] = {
    "add": "addition",
    "subtract": "subtraction",
    "multiply": "multiplication",
    "divide": "division",
}

OPERATION_SYMBOLS: Dict[str, str] = {
    "add": "+",
    "subtract": "-",
    "multiply": "*",
    "divide": "/",
}

SYSTEM_PROMPT = "You are a precise mathematical calculator. Return only numerical results."

_LEADING_NUMBER = re.compile(r"^\s*[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")

class ComputeError(Exception):
    """Raised when a calculator cannot produce a result."""
    pass

@dataclass
class ComputeResult:
    result: float
    tokens_used: int = 0
    cost: float = 0.0
    source: str = "local"

def build_prompt(operation: OperationType, a: float, b: float) -> str:
    return (
        f"Compute the {OPERATION_NAMES[operation]} of {a} {OPERATION_SYMBOLS[operation]} {b}. \n"
        "Return ONLY the numerical result, no explanation, no text, just the number."
    )

def parse_number(text: Optional[str]) -> float:
    """Read the leading number of a model reply, e.g. ``"42"`` or ``"42.0 is the answer"``."""
    text = (text or "").strip()
    try:
        value = float(text)
    except ValueError:
        m = _LEADING_NUMBER.match(text)
        if not m:
            raise ComputeError(f"Invalid result from LLM: {text!r}")
        value = float(m.group(0))
    if math.isnan(value):
        raise ComputeError(f"Invalid result from LLM: {text!r}")
    return value

class Calculator(ABC):
    name: str = "calculator"

    @abstractmethod
    async def compute(self, operation: OperationType, a: float, b: float) -> ComputeResult:
        ...

class LocalCalculator(Calculator):
    """Plain float arithmetic. Division by zero yields nan instead of raising."""

    name = "local"

    async def compute(self, operation: OperationType, a: float, b: float) -> ComputeResult:
        a, b = float(a), float(b)
        if operation == "add":
            value = a + b
        elif operation == "subtract":
            value = a - b
        elif operation == "multiply":
            value = a * b
        elif operation == "divide":
            value = a / b if b != 0 else math.nan
        else:
            raise ComputeError(f"Unknown operation: {operation}")
        return ComputeResult(result=value, tokens_used=0, cost=0.0, source=self.name)

class LLMCalculator(Calculator):
    """Asks an OpenAI chat model for the result."""

    name = "llm"

    def __init__(self, client: Any, model: str = "gpt-3.5-turbo", temperature: float = 0.0,
                 max_tokens: int = 50, price_per_1k_tokens: float = 0.002, timeout: Optional[float] = 30.0):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.price_per_1k_tokens = price_per_1k_tokens
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMCalculator":
        if not settings.OPENAI_API_KEY:
            raise RuntimeError("OPENAI_API_KEY is not set")
        return cls(
            AsyncOpenAI(api_key=settings.OPENAI_API_KEY),
            model=settings.LLM_MODEL,
            temperature=settings.LLM_TEMPERATURE,
            max_tokens=settings.LLM_MAX_TOKENS,
            price_per_1k_tokens=settings.LLM_PRICE_PER_1K_TOKENS,
            timeout=settings.LLM_PER_CALL_TIMEOUT,
        )

    async def compute(self, operation: OperationType, a: float, b: float) -> ComputeResult:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(operation, a, b)},
        ]
        call = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        try:
            res = await asyncio.wait_for(call, timeout=self.timeout) if self.timeout else await call
        except asyncio.TimeoutError as e:
            record_llm_call(0, 0, 0.0, timeout=True)
            raise ComputeError(f"LLM call for {operation} timed out after {self.timeout}s") from e

        text = res.choices[0].message.content if res.choices else None
        usage = getattr(res, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        tokens_used = prompt_tokens + completion_tokens
        cost = (tokens_used / 1000) * self.price_per_1k_tokens
        record_llm_call(prompt_tokens, completion_tokens, cost)

        value = parse_number(text)
        return ComputeResult(result=value, tokens_used=tokens_used, cost=cost, source=self.name)

class ComputationDelegate:
    """Runs the primary calculator and falls back to local arithmetic."""

    def __init__(self, primary: Optional[Calculator] = None, fallback: Optional[Calculator] = None,
                 fallback_on_error: bool = True):
        self.primary = primary
        self.fallback = fallback or LocalCalculator()
        self.fallback_on_error = fallback_on_error

    @property
    def mode(self) -> str:
        return self.primary.name if self.primary is not None else self.fallback.name

    async def compute(self, operation: OperationType, a: float, b: float) -> ComputeResult:
        if self.primary is None:
            return await self.fallback.compute(operation, a, b)

        try:
            return await self.primary.compute(operation, a, b)
        except Exception as e:
            if not self.fallback_on_error:
                logger.error(f"{self.primary.name} computation error for {operation}: {e}")
                if isinstance(e, ComputeError):
                    raise
                raise ComputeError(str(e)) from e
            reason = "llm_parse_error" if isinstance(e, ComputeError) else "llm_provider_error"
            logger.warning(f"{self.primary.name} computation failed for {operation} ({e}), using local arithmetic")
            record_fallback(reason)
            return await self.fallback.compute(operation, a, b)

def build_delegate(settings: Settings) -> ComputationDelegate:
    """Pick the calculator chain once, at startup."""
    if not settings.LLM_ENABLED:
        logger.info("LLM disabled by configuration, using local arithmetic")
        record_fallback("llm_disabled")
        return ComputationDelegate()
    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set, using local arithmetic")
        record_fallback("missing_credentials")
        return ComputationDelegate()
    return ComputationDelegate(
        primary=LLMCalculator.from_settings(settings),
        fallback_on_error=settings.LLM_FALLBACK_ON_ERROR,
    )

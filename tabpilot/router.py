"""
TABPILOT Router — Planner/Refiner Model Access

Both planning roles talk to their model through LiteLLM, so swapping vendors
is a config change. One Router serves every session a driver runs; planning
calls arrive from worker threads, so the shared spend counters are guarded.

JSON mode is asked for by both roles. Models LiteLLM reports as not accepting
`response_format` get the request without it; the agents already cope with
fenced or prose-wrapped JSON.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from tabpilot.config_loader import RoutingConfig, TabPilotConfig
from tabpilot.errors import BudgetExceededError

ROLES = tuple(RoutingConfig.model_fields)


# ---------------------------------------------------------------------------
# Spend
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Token and dollar spend across every planning call of one run."""
    max_tokens: int = 150_000
    max_dollars: float = 10.0
    usage: UsageRecord = field(default_factory=UsageRecord)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        return self.tokens_remaining == 0 or self.dollars_remaining == 0.0

    def record(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0)
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0)
            self.usage.total_tokens += getattr(usage, "total_tokens", 0)

        # LiteLLM's price table does not cover every model
        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            logger.debug(f"[ROUTER] No cost data for response: {e}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
        }


# ---------------------------------------------------------------------------
# Per-model request shaping
# ---------------------------------------------------------------------------

def _takes_temperature(model: str) -> bool:
    # OpenAI reasoning families reject an explicit temperature
    name = model.lower().replace("openai/", "")
    return not name.startswith(("o1", "o3", "o4", "gpt-5"))


@lru_cache(maxsize=64)
def _supports_json_mode(model: str) -> bool:
    try:
        params = litellm.get_supported_openai_params(model=model)
    except Exception as e:
        logger.debug(f"[ROUTER] Capability lookup failed for {model}: {e}")
        return True
    # Unknown to LiteLLM: send it and let the provider decide
    return params is None or "response_format" in params


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    response_format: dict | None,
) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"model": model, "messages": messages, "max_tokens": max_tokens}
    if _takes_temperature(model):
        kwargs["temperature"] = temperature
    if response_format:
        if _supports_json_mode(model):
            kwargs["response_format"] = response_format
        else:
            logger.debug(f"[ROUTER] {model} has no JSON mode, relying on the prompt")
    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Router:
    """
    `router.complete(role, messages)` for the planner and refiner agents.
    Raises BudgetExceededError once the run's token or dollar cap is spent.
    """

    def __init__(self, config: TabPilotConfig):
        self.config = config
        self.budget = BudgetTracker(
            max_tokens=config.limits.max_tokens_per_task,
            max_dollars=config.limits.max_dollars_per_task,
        )
        self._lock = threading.Lock()
        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        if role not in ROLES:
            raise ValueError(f"Unknown planning role: {role}. Known: {list(ROLES)}")
        return getattr(self.config.routing, role)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        retry=retry_if_not_exception_type((BudgetExceededError, ValueError)),
        reraise=True,
    )
    def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 2500,
        response_format: dict | None = None,
    ) -> RouterResponse:
        model = self.resolve_model(role)
        with self._lock:
            if self.budget.budget_exceeded:
                raise BudgetExceededError(f"Budget exceeded: {self.budget.summary()}")

        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages)")
        start = time.monotonic()
        response = litellm.completion(**_build_kwargs(model, messages, temperature, max_tokens, response_format))
        elapsed_ms = int((time.monotonic() - start) * 1000)

        with self._lock:
            self.budget.record(response)
            spent = self.budget.summary()

        logger.debug(
            f"[ROUTER] {role} done in {elapsed_ms}ms, run total "
            f"{spent['total_tokens']} tokens / ${spent['estimated_cost']:.4f}"
        )
        return RouterResponse(
            content=response.choices[0].message.content or "",
            model=model,
            tokens_used=getattr(getattr(response, "usage", None), "total_tokens", 0),
            cost=spent["estimated_cost"],
            latency_ms=elapsed_ms,
        )

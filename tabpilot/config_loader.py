"""
Configuration loader for TABPILOT.
Merges built-in defaults with per-project .tabpilot/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class RoutingConfig(BaseModel):
    planner: str = "groq/llama-3.3-70b-versatile"
    refiner: str = "groq/llama-3.3-70b-versatile"


class DialogueConfig(BaseModel):
    """Policy knobs for the dialogue state machine."""
    max_clarification_rounds: int = 3
    max_refine_iterations: int = 3
    ask_below: float = 0.5
    proceed_at: float = 0.9
    refine_good_enough: float = 0.9
    auto_execute_delay_ms: int = 3000
    mid_exec_timeout_ms: int = 30000


class LimitsConfig(BaseModel):
    max_iterations: int = 50
    action_delay_ms: int = 1000
    max_replans: int = 3
    max_tokens_per_task: int = 150_000
    max_dollars_per_task: float = 10.0


class StoreConfig(BaseModel):
    backend: Literal["memory", "file"] = "file"
    state_dir: str = ".tabpilot/sessions"


class AuditConfig(BaseModel):
    enabled: bool = True
    log_file: str = ".tabpilot/logs/audit.jsonl"
    batch_size: int = 10


class TabPilotConfig(BaseModel):
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    dialogue: DialogueConfig = Field(default_factory=DialogueConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(project_path: Path | None = None) -> TabPilotConfig:
    """
    Load config by merging:
      1. Built-in defaults (tabpilot/config.yaml)
      2. Project-level overrides (<project>/.tabpilot/config.yaml)
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if project_path:
        project_config = project_path / ".tabpilot" / "config.yaml"
        if project_config.exists():
            with open(project_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    return TabPilotConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which provider API keys are available (LiteLLM reads them directly)."""
    return {
        "GROQ_API_KEY":      bool(os.environ.get("GROQ_API_KEY")),
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "DEEPSEEK_API_KEY":  bool(os.environ.get("DEEPSEEK_API_KEY")),
    }

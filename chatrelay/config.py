"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < env vars < CLI flags
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any

import yaml

from chatrelay import prompts


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class LLMConfig:
    name: str = "openai"
    model: str = "gpt-4o"
    api_base: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.7
    max_tokens: int = 2000
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 120.0
    system_prompt: str = prompts.SYSTEM_PROMPT
    extracted_text_prompt: str = prompts.EXTRACTED_TEXT_PROMPT

    @property
    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "")


@dataclass
class StoreConfig:
    history_db: str = "~/.chatrelay/history.db"
    quiz_db: str = "~/.chatrelay/quizzes.db"


@dataclass
class RelayConfig:
    tool_timeout_seconds: float = 30.0
    error_apology: str = prompts.ERROR_APOLOGY
    tool_apology: str = prompts.TOOL_APOLOGY
    empty_reply: str = prompts.EMPTY_REPLY


@dataclass
class ToolsConfig:
    disabled: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ChatRelayConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    """Walk obj via dotpath and set the final attribute."""
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise KeyError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    """Coerce a string env value to the target type."""
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    if target_type is list:
        return [s.strip() for s in value.split(",") if s.strip()]
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in valid_fields})


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "CHATRELAY_LLM_NAME":            ("llm.name", str),
    "CHATRELAY_LLM_MODEL":           ("llm.model", str),
    "CHATRELAY_LLM_API_BASE":        ("llm.api_base", str),
    "CHATRELAY_LLM_API_KEY_ENV":     ("llm.api_key_env", str),
    "CHATRELAY_LLM_TEMPERATURE":     ("llm.temperature", float),
    "CHATRELAY_LLM_MAX_TOKENS":      ("llm.max_tokens", int),
    "CHATRELAY_LLM_CONNECT_TIMEOUT": ("llm.connect_timeout_seconds", float),
    "CHATRELAY_LLM_READ_TIMEOUT":    ("llm.read_timeout_seconds", float),
    "CHATRELAY_STORE_HISTORY_DB":    ("store.history_db", str),
    "CHATRELAY_STORE_QUIZ_DB":       ("store.quiz_db", str),
    "CHATRELAY_RELAY_TOOL_TIMEOUT":  ("relay.tool_timeout_seconds", float),
    "CHATRELAY_TOOLS_DISABLED":      ("tools.disabled", list),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ChatRelayConfig:
    """
    Build a ChatRelayConfig by layering sources in precedence order:

        defaults  <  config file  <  env vars  <  CLI flags

    Parameters
    ----------
    config_path : path to YAML config file (optional)
    profile : name of a profile to apply from the config file
    cli_overrides : dict of dotpath -> value CLI flag overrides
    """
    raw: dict[str, Any] = {}

    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                raw = _deep_merge(raw, yaml.safe_load(f) or {})

    if profile:
        profile_data = raw.get("profiles", {}).get(profile, {})
        if profile_data:
            raw = _deep_merge(raw, profile_data)

    cfg = ChatRelayConfig(
        llm=_build_section(LLMConfig, raw.get("llm", {})),
        store=_build_section(StoreConfig, raw.get("store", {})),
        relay=_build_section(RelayConfig, raw.get("relay", {})),
        tools=_build_section(ToolsConfig, raw.get("tools", {})),
        profiles=raw.get("profiles", {}),
    )

    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    if cli_overrides:
        for dotpath, value in cli_overrides.items():
            _apply_dotpath(cfg, dotpath, value)

    return cfg

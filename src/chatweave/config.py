"""Configuration loading from environment variables and chatweave.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from chatweave.collaborators.base import NamesBehavior

_CONFIG_FILENAME = "chatweave.toml"
_CONFIG_HOME = Path.home() / ".chatweave"

DEFAULT_IMPERSONATION_PROMPT = (
    "[Write your next reply from the point of view of {{user}}, using the chat history so far "
    "as a guideline for the writing style of {{user}}. Don't write as {{char}} or system. "
    "Don't describe actions of {{char}}.]"
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class BudgetConfig:
    """Context window sizing. The prompt budget is max_context - max_tokens."""

    max_context: int = 4095
    max_tokens: int = 300
    reply_priming_tokens: int = 3

    @property
    def prompt_budget(self) -> int:
        return max(0, self.max_context - self.max_tokens)


@dataclass
class GenerationConfig:
    """Behaviour switches for a single composition."""

    continue_prefill: bool = False
    assistant_prefill: str = ""
    names_behavior: NamesBehavior = NamesBehavior.DEFAULT
    squash_system_messages: bool = False


@dataclass
class TemplateConfig:
    """Text templates; all may contain macros."""

    new_chat_prompt: str = "[Start a new Chat]"
    new_example_chat_prompt: str = "[Example Chat]"
    continue_nudge_prompt: str = ""
    impersonation_prompt: str = DEFAULT_IMPERSONATION_PROMPT
    wi_format: str = "{0}"
    scenario_format: str = "{{scenario}}"
    personality_format: str = "{{personality}}"


@dataclass
class ChatweaveConfig:
    """Top-level chatweave configuration."""

    budget: BudgetConfig = field(default_factory=BudgetConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    templates: TemplateConfig = field(default_factory=TemplateConfig)
    preset_dir: Path | None = None
    log_level: str = "INFO"


def load_config(config_path: Path | None = None) -> ChatweaveConfig:
    """Load configuration from environment variables and optional chatweave.toml.

    Priority: environment variables > chatweave.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.chatweave/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _CONFIG_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    budget_data = file_data.get("budget", {})
    generation_data = file_data.get("generation", {})
    template_data = file_data.get("templates", {})
    defaults = TemplateConfig()

    preset_dir = os.getenv("CHATWEAVE_PRESET_DIR", file_data.get("preset_dir"))

    config = ChatweaveConfig(
        budget=BudgetConfig(
            max_context=int(os.getenv("CHATWEAVE_MAX_CONTEXT", budget_data.get("max_context", 4095))),
            max_tokens=int(os.getenv("CHATWEAVE_MAX_TOKENS", budget_data.get("max_tokens", 300))),
            reply_priming_tokens=int(budget_data.get("reply_priming_tokens", 3)),
        ),
        generation=GenerationConfig(
            continue_prefill=_env_bool(
                "CHATWEAVE_CONTINUE_PREFILL", bool(generation_data.get("continue_prefill", False))
            ),
            assistant_prefill=generation_data.get("assistant_prefill", ""),
            names_behavior=NamesBehavior(generation_data.get("names_behavior", "default")),
            squash_system_messages=bool(generation_data.get("squash_system_messages", False)),
        ),
        templates=TemplateConfig(
            **{
                name: str(template_data.get(name, getattr(defaults, name)))
                for name in TemplateConfig.__dataclass_fields__
            }
        ),
        preset_dir=Path(preset_dir).expanduser() if preset_dir else None,
        log_level=os.getenv("CHATWEAVE_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config

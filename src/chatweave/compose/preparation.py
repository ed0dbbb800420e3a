"""Fill a preset's markers with the request's character data.

Produces the PromptStore the composer consumes: markers such as
`charDescription` or `worldInfoBefore` get their content, request-level
prompts (impersonation, quiet prompt, bias, summary, author's note) are
added, and the character's own main / post-history prompts override the
preset's where allowed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from chatweave.collaborators.base import Capabilities
from chatweave.compose.message import Role, Section
from chatweave.compose.prompts import DEFAULT_INJECTION_DEPTH, InjectionPosition, Preset, Prompt, PromptStore
from chatweave.config import TemplateConfig

logger = logging.getLogger(__name__)

_FORMAT_ARG = re.compile(r"{(\d+)}")


@dataclass
class CharacterCard:
    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    message_examples: list[list[dict[str, Any]]] = field(default_factory=list)
    # Character overrides for `main` and `jailbreak`; may use {{original}}
    system_prompt: str = ""
    post_history_instructions: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CharacterCard:
        return cls(
            name=data.get("name", ""),
            description=data.get("description", ""),
            personality=data.get("personality", ""),
            scenario=data.get("scenario", ""),
            message_examples=list(data.get("message_examples", [])),
            system_prompt=data.get("system_prompt", ""),
            post_history_instructions=data.get("post_history_instructions", ""),
        )


@dataclass
class ExtensionPrompt:
    """Summary or author's-note text injected into the main group."""

    value: str
    role: Role = Role.SYSTEM
    position: InjectionPosition = InjectionPosition.RELATIVE
    depth: int = DEFAULT_INJECTION_DEPTH

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExtensionPrompt:
        return cls(
            value=data.get("value", ""),
            role=Role(data.get("role", "system")),
            position=InjectionPosition.parse(data.get("position", 0)),
            depth=int(data.get("depth", DEFAULT_INJECTION_DEPTH)),
        )


def format_world_info(value: str, wi_format: str = "{0}") -> str:
    if not value:
        return ""
    if not wi_format.strip():
        return value
    return _FORMAT_ARG.sub(lambda m: value if m.group(1) == "0" else m.group(0), wi_format)


def _fill(template: str, key: str, value: str) -> str:
    if not value:
        return ""
    if not template:
        return value
    return re.sub("{{" + key + "}}", lambda _m: value, template, flags=re.IGNORECASE)


def _apply_override(store: PromptStore, section: Section, text: str, capabilities: Capabilities | None) -> None:
    if not text or not store.has(section.value):
        return
    current = store.get(section.value)
    if current.forbid_overrides:
        logger.debug("Override of %s forbidden by preset", section)
        return
    if capabilities is not None and capabilities.is_disabled(section.value):
        return
    content = re.sub("{{original}}", lambda _m: current.content, text, count=1, flags=re.IGNORECASE)
    content = re.sub("{{original}}", "", content, flags=re.IGNORECASE)
    store.override(replace(current, content=content))
    logger.debug("Character overrides %s", section)


def prepare_prompts(
    preset: Preset | PromptStore,
    card: CharacterCard | None = None,
    *,
    templates: TemplateConfig | None = None,
    capabilities: Capabilities | None = None,
    world_info_before: str = "",
    world_info_after: str = "",
    quiet_prompt: str = "",
    bias: str = "",
    summary: ExtensionPrompt | None = None,
    authors_note: ExtensionPrompt | None = None,
    persona_description: str = "",
) -> PromptStore:
    """Build the per-request PromptStore.

    Prepared prompts replace the preset's marker of the same identifier in
    place; prompts the preset does not declare are appended.
    """
    card = card or CharacterCard()
    templates = templates or TemplateConfig()
    store = preset.store() if isinstance(preset, Preset) else preset.copy()

    prepared = [
        Prompt(Section.WORLD_INFO_BEFORE.value, format_world_info(world_info_before, templates.wi_format)),
        Prompt(Section.WORLD_INFO_AFTER.value, format_world_info(world_info_after, templates.wi_format)),
        Prompt(Section.CHAR_DESCRIPTION.value, card.description),
        Prompt(Section.CHAR_PERSONALITY.value, _fill(templates.personality_format, "personality", card.personality)),
        Prompt(Section.SCENARIO.value, _fill(templates.scenario_format, "scenario", card.scenario)),
        Prompt(Section.IMPERSONATE.value, templates.impersonation_prompt),
        Prompt(Section.QUIET_PROMPT.value, quiet_prompt),
        Prompt(Section.BIAS.value, bias, role=Role.ASSISTANT),
    ]
    for section, extension in ((Section.SUMMARY, summary), (Section.AUTHORS_NOTE, authors_note)):
        if extension and extension.value:
            prepared.append(
                Prompt(
                    section.value,
                    extension.value,
                    role=extension.role,
                    injection_position=extension.position,
                    injection_depth=extension.depth,
                )
            )
    if persona_description:
        prepared.append(Prompt(Section.PERSONA_DESCRIPTION.value, persona_description))

    for prompt in prepared:
        prompt.system_prompt = True
        if store.has(prompt.identifier):
            declared = store.get(prompt.identifier)
            prompt.name = declared.name
            prompt.injection_position = declared.injection_position
            prompt.injection_order = declared.injection_order
            prompt.forbid_overrides = declared.forbid_overrides
        store.set(prompt)

    _apply_override(store, Section.MAIN, card.system_prompt, capabilities)
    _apply_override(store, Section.JAILBREAK, card.post_history_instructions, capabilities)

    logger.debug("Prepared %d prompts (%d overridden)", len(store), len(store.overridden))
    return store

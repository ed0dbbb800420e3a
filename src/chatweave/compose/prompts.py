"""Prompts, the per-request prompt store, and presets on disk.

A preset is a directory of markdown files, one prompt per file. YAML
frontmatter carries the prompt's metadata, the body is its content:

    ---
    identifier: main
    name: Main Prompt
    role: system
    system_prompt: true
    order: 0
    ---
    Write {{char}}'s next reply in a fictional chat between {{charIfNotGroup}} and {{user}}.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from enum import IntEnum
from pathlib import Path

import frontmatter

from chatweave.compose.message import Role, Section
from chatweave.errors import MissingIdentifier

logger = logging.getLogger(__name__)

DEFAULT_INJECTION_DEPTH = 4
DEFAULT_INJECTION_ORDER = 100


class InjectionPosition(IntEnum):
    RELATIVE = 0
    ABSOLUTE = 1

    @classmethod
    def parse(cls, value: object) -> InjectionPosition:
        if isinstance(value, str) and not value.isdigit():
            return cls[value.upper()]
        return cls(int(value))  # type: ignore[arg-type]


@dataclass
class Prompt:
    """A named fragment of the final prompt.

    `injection_order` is preset metadata only: it is loaded, dumped and
    carried through preparation, but composition does not read it, the
    same as ABSOLUTE placement.
    """

    identifier: str
    content: str = ""
    role: Role = Role.SYSTEM
    name: str = ""
    system_prompt: bool = False
    marker: bool = False
    injection_position: InjectionPosition = InjectionPosition.RELATIVE
    injection_depth: int = DEFAULT_INJECTION_DEPTH
    injection_order: int = DEFAULT_INJECTION_ORDER
    forbid_overrides: bool = False

    def __post_init__(self) -> None:
        self.identifier = str(self.identifier)
        self.role = Role(self.role)
        self.injection_position = InjectionPosition(self.injection_position)

    @property
    def is_absolute(self) -> bool:
        return self.injection_position is InjectionPosition.ABSOLUTE


class PromptStore:
    """Ordered, identifier-unique collection of prompts for one request.

    The index of a prompt is the slot its group occupies in the output.
    """

    def __init__(self, prompts: list[Prompt] | None = None) -> None:
        self._prompts: list[Prompt] = []
        self.overridden: list[str] = []
        for prompt in prompts or []:
            self.add(prompt)

    def add(self, prompt: Prompt) -> None:
        if self.has(prompt.identifier):
            raise ValueError(f"duplicate prompt identifier: {prompt.identifier}")
        self._prompts.append(prompt)

    def insert(self, position: int, prompt: Prompt) -> None:
        if self.has(prompt.identifier):
            raise ValueError(f"duplicate prompt identifier: {prompt.identifier}")
        self._prompts.insert(position, prompt)

    def has(self, identifier: str) -> bool:
        return self.index(identifier) != -1

    def get(self, identifier: str) -> Prompt:
        position = self.index(identifier)
        if position == -1:
            raise MissingIdentifier(str(identifier), "prompt store")
        return self._prompts[position]

    def index(self, identifier: str) -> int:
        """Position of a prompt, or -1 when it is not stored."""
        identifier = str(identifier)
        for i, prompt in enumerate(self._prompts):
            if prompt.identifier == identifier:
                return i
        return -1

    def set(self, prompt: Prompt) -> None:
        """Replace a prompt in place, or append it when new."""
        position = self.index(prompt.identifier)
        if position == -1:
            self._prompts.append(prompt)
        else:
            self._prompts[position] = prompt

    def override(self, prompt: Prompt) -> None:
        self.set(prompt)
        self.overridden.append(prompt.identifier)

    def remove(self, identifier: str) -> None:
        position = self.index(identifier)
        if position != -1:
            del self._prompts[position]

    def copy(self) -> PromptStore:
        clone = PromptStore([replace(p) for p in self._prompts])
        clone.overridden = list(self.overridden)
        return clone

    def __iter__(self) -> Iterator[Prompt]:
        return iter(list(self._prompts))

    def __len__(self) -> int:
        return len(self._prompts)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.has(identifier)


# ── Presets ──────────────────────────────────────────────────


@dataclass
class PresetEntry:
    prompt: Prompt
    enabled: bool = True


@dataclass
class Preset:
    """Ordered set of prompts with per-prompt enabled flags."""

    entries: list[PresetEntry] = field(default_factory=list)
    source: Path | None = None

    def store(self) -> PromptStore:
        """Fresh store of the enabled prompts, in preset order."""
        return PromptStore([copy.deepcopy(e.prompt) for e in self.entries if e.enabled])

    @property
    def order(self) -> list[str]:
        return [e.prompt.identifier for e in self.entries]

    @property
    def disabled(self) -> list[str]:
        return [e.prompt.identifier for e in self.entries if not e.enabled]

    def get(self, identifier: str) -> PresetEntry:
        for entry in self.entries:
            if entry.prompt.identifier == identifier:
                return entry
        raise MissingIdentifier(identifier, "preset")

    @classmethod
    def load(cls, directory: Path) -> Preset:
        """Read every `*.md` file in a directory as one prompt.

        Files are ordered by their `order` key, then by file name. Files
        without an `identifier` use their stem.
        """
        if not directory.is_dir():
            raise FileNotFoundError(f"preset directory not found: {directory}")

        loaded: list[tuple[int, str, PresetEntry]] = []
        for md_file in sorted(directory.glob("*.md")):
            post = frontmatter.load(str(md_file))
            meta = dict(post.metadata)
            prompt = Prompt(
                identifier=str(meta.get("identifier", md_file.stem)),
                content=post.content,
                role=Role(meta.get("role", "system")),
                name=str(meta.get("name", "")),
                system_prompt=bool(meta.get("system_prompt", False)),
                marker=bool(meta.get("marker", False)),
                injection_position=InjectionPosition.parse(meta.get("injection_position", 0)),
                injection_depth=int(meta.get("injection_depth", DEFAULT_INJECTION_DEPTH)),
                injection_order=int(meta.get("injection_order", DEFAULT_INJECTION_ORDER)),
                forbid_overrides=bool(meta.get("forbid_overrides", False)),
            )
            entry = PresetEntry(prompt, enabled=bool(meta.get("enabled", True)))
            loaded.append((int(meta.get("order", 0)), md_file.name, entry))

        loaded.sort(key=lambda item: (item[0], item[1]))
        preset = cls(entries=[entry for _, _, entry in loaded], source=directory)
        seen: set[str] = set()
        for identifier in preset.order:
            if identifier in seen:
                raise ValueError(f"duplicate prompt identifier in {directory}: {identifier}")
            seen.add(identifier)
        logger.info("Loaded preset %s (%d prompts)", directory, len(preset.entries))
        return preset

    def dump(self, directory: Path) -> list[Path]:
        """Write the preset as one markdown file per prompt."""
        directory.mkdir(parents=True, exist_ok=True)
        written = []
        for order, entry in enumerate(self.entries):
            prompt = entry.prompt
            metadata = {
                "identifier": prompt.identifier,
                "name": prompt.name,
                "role": prompt.role.value,
                "system_prompt": prompt.system_prompt,
                "marker": prompt.marker,
                "injection_position": prompt.injection_position.name.lower(),
                "injection_depth": prompt.injection_depth,
                "injection_order": prompt.injection_order,
                "forbid_overrides": prompt.forbid_overrides,
                "enabled": entry.enabled,
                "order": order,
            }
            post = frontmatter.Post(prompt.content, **metadata)
            path = directory / f"{order:02d}-{prompt.identifier}.md"
            path.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
            written.append(path)
        return written


def _marker(section: Section, name: str) -> Prompt:
    return Prompt(identifier=section.value, name=name, system_prompt=True, marker=True)


def default_prompts() -> dict[str, Prompt]:
    prompts = [
        Prompt(
            identifier=Section.MAIN.value,
            name="Main Prompt",
            system_prompt=True,
            content="Write {{char}}'s next reply in a fictional chat between "
            "{{charIfNotGroup}} and {{user}}.",
        ),
        Prompt(identifier=Section.NSFW.value, name="Auxiliary Prompt", system_prompt=True),
        _marker(Section.DIALOGUE_EXAMPLES, "Chat Examples"),
        Prompt(identifier=Section.JAILBREAK.value, name="Post-History Instructions", system_prompt=True),
        _marker(Section.CHAT_HISTORY, "Chat History"),
        _marker(Section.WORLD_INFO_AFTER, "World Info (after)"),
        _marker(Section.WORLD_INFO_BEFORE, "World Info (before)"),
        Prompt(
            identifier=Section.ENHANCE_DEFINITIONS.value,
            name="Enhance Definitions",
            system_prompt=True,
            content="If you have more knowledge of {{char}}, add to the character's lore "
            "and personality to enhance them but keep the Character Sheet's definitions absolute.",
        ),
        _marker(Section.CHAR_DESCRIPTION, "Char Description"),
        _marker(Section.CHAR_PERSONALITY, "Char Personality"),
        _marker(Section.SCENARIO, "Scenario"),
        _marker(Section.PERSONA_DESCRIPTION, "Persona Description"),
    ]
    return {p.identifier: p for p in prompts}


DEFAULT_ORDER: list[tuple[Section, bool]] = [
    (Section.MAIN, True),
    (Section.WORLD_INFO_BEFORE, True),
    (Section.CHAR_DESCRIPTION, True),
    (Section.CHAR_PERSONALITY, True),
    (Section.SCENARIO, True),
    (Section.ENHANCE_DEFINITIONS, False),
    (Section.NSFW, True),
    (Section.WORLD_INFO_AFTER, True),
    (Section.DIALOGUE_EXAMPLES, True),
    (Section.CHAT_HISTORY, True),
    (Section.JAILBREAK, True),
]


def default_preset() -> Preset:
    """The built-in preset used when no preset directory is configured."""
    prompts = default_prompts()
    return Preset(entries=[PresetEntry(prompts[s.value], enabled) for s, enabled in DEFAULT_ORDER])

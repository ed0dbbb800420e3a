"""Composer — builds the chat-completion message list for one request.

Responsibilities:
1. Reserve reply priming and collect directive lists
2. Chat history — newest message guaranteed, older ones while budget lasts
3. Fixed-order sections, then user-ordered prompts
4. Control prompts (impersonation, continue prefill/nudge, quiet prompt), always last
5. Summary / author's note injected into the main group
6. Dialogue examples, all-or-nothing per dialogue
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatweave.collaborators.base import (
    Capabilities,
    DirectiveSource,
    MacroSubstituter,
    NamesBehavior,
    NameSanitizer,
    Placement,
    TextTransform,
    TokenCounter,
    invoke,
)
from chatweave.collaborators.defaults import (
    IdentityTransform,
    StaticCapabilities,
    StaticDirectiveSource,
    sanitize_name,
)
from chatweave.collaborators.macros import MacroEngine
from chatweave.compose.assembler import Assembler
from chatweave.compose.budget import Budget
from chatweave.compose.injection import DirectiveEntries, InjectionResolver
from chatweave.compose.message import Group, HistoryMessage, Message, Role, Section
from chatweave.compose.prompts import Prompt, PromptStore
from chatweave.config import ChatweaveConfig
from chatweave.errors import CollaboratorFailure, InvalidHistoryRecord, MissingIdentifier

logger = logging.getLogger(__name__)

# Added in this order, each only if present and enabled
FIXED_ORDER = (
    Section.WORLD_INFO_BEFORE,
    Section.MAIN,
    Section.WORLD_INFO_AFTER,
    Section.CHAR_DESCRIPTION,
    Section.CHAR_PERSONALITY,
    Section.SCENARIO,
    Section.PERSONA_DESCRIPTION,
)
SYSTEM_PROMPTS = (Section.NSFW, Section.JAILBREAK)

# Filled by their own steps, never added as plain prompts
_FILLED_ELSEWHERE = frozenset(
    s.value
    for s in (
        Section.CHAT_HISTORY,
        Section.DIALOGUE_EXAMPLES,
        Section.SUMMARY,
        Section.AUTHORS_NOTE,
        Section.BIAS,
        Section.IMPERSONATE,
        Section.QUIET_PROMPT,
    )
)


class GenerationType(str, Enum):
    NORMAL = "normal"
    CONTINUE = "continue"
    IMPERSONATE = "impersonate"
    QUIET = "quiet"
    SWIPE = "swipe"
    REGENERATE = "regenerate"


@dataclass
class CompositionRequest:
    """Per-request options. `messages` are oldest first."""

    messages: list[HistoryMessage | Mapping[str, Any]] = field(default_factory=list)
    message_examples: list[list[Mapping[str, Any]]] = field(default_factory=list)
    type: GenerationType = GenerationType.NORMAL
    bias: str = ""
    quiet_prompt: str = ""
    cycle_prompt: str = ""  # accepted for API parity; no step reads it
    exclude_directives: bool = False

    def __post_init__(self) -> None:
        self.type = GenerationType(self.type)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CompositionRequest:
        return cls(
            messages=list(data.get("messages", [])),
            message_examples=list(data.get("message_examples", [])),
            type=GenerationType(data.get("type", "normal")),
            bias=data.get("bias", ""),
            quiet_prompt=data.get("quiet_prompt", ""),
            cycle_prompt=data.get("cycle_prompt", ""),
            exclude_directives=bool(data.get("exclude_directives", False)),
        )


class Composer:
    """Configured entry point; every `compose()` call is independent."""

    def __init__(
        self,
        config: ChatweaveConfig | None = None,
        *,
        capabilities: Capabilities | None = None,
        token_counter: TokenCounter | None = None,
        substitute: MacroSubstituter | None = None,
        transform: TextTransform | None = None,
        directives: DirectiveSource | None = None,
        name_sanitizer: NameSanitizer | None = None,
    ) -> None:
        self.config = config or ChatweaveConfig()
        self.capabilities = capabilities or StaticCapabilities()
        self.token_counter = token_counter
        self.substitute = substitute or MacroEngine()
        self.transform = transform or IdentityTransform()
        self.directives = directives or StaticDirectiveSource()
        self.name_sanitizer = name_sanitizer or sanitize_name

    def new_assembler(self) -> Assembler:
        return Assembler(Budget(self.config.budget.prompt_budget))

    async def compose(
        self,
        prompts: PromptStore,
        request: CompositionRequest,
        assembler: Assembler | None = None,
    ) -> list[dict[str, str]]:
        """Build the ordered message list.

        The store is copied first; the caller's store is never modified.
        Raises BudgetExceeded when a mandatory part does not fit.
        """
        assembler = assembler if assembler is not None else self.new_assembler()
        composition = _Composition(self, prompts.copy(), request, assembler)
        await composition.build()
        chat = assembler.get_chat()
        logger.info(
            "Composed %d messages (%s), %d/%d tokens used",
            len(chat), request.type.value, assembler.budget.used, assembler.budget.total,
        )
        return chat


async def compose(
    prompts: PromptStore,
    request: CompositionRequest,
    *,
    config: ChatweaveConfig | None = None,
    assembler: Assembler | None = None,
    **collaborators: Any,
) -> list[dict[str, str]]:
    """One-shot composition; `collaborators` are passed to Composer."""
    return await Composer(config, **collaborators).compose(prompts, request, assembler)


class _Composition:
    """State of a single compose() call."""

    def __init__(
        self,
        composer: Composer,
        prompts: PromptStore,
        request: CompositionRequest,
        assembler: Assembler,
    ) -> None:
        self.composer = composer
        self.config = composer.config
        self.prompts = prompts
        self.request = request
        self.assembler = assembler
        self.budget = assembler.budget
        self.directives = DirectiveEntries()
        self.resolver = InjectionResolver()
        self.control = Group(Section.CONTROL_PROMPTS.value)
        self._control_reserved = 0
        self._history: list[HistoryMessage | None] = []

    @property
    def _names(self) -> tuple[str, str]:
        caps = self.composer.capabilities
        return caps.user_name, caps.char_name

    # ── Main sequence ─────────────────────────────────────────

    async def build(self) -> None:
        # 1. Reply priming
        self.budget.reserve(self.config.budget.reply_priming_tokens, "replyPriming")

        # 2. Directive lists
        await self._collect_directives()

        # 3. Chat history first: it may rewrite the before-context prompt
        await self._populate_chat_history()

        # 4. Fixed-order sections
        for section in FIXED_ORDER:
            await self._add_prompt(section.value)

        # 5-7. Control prompts
        await self._build_control_prompts()

        # 8. Reserve the whole control group once
        self.budget.free(self._control_reserved)
        self._control_reserved = 0
        self.budget.reserve(self.control.tokens, self.control.identifier)
        self._control_reserved = self.control.tokens

        # 9. System prompts, then user-ordered prompts
        for section in SYSTEM_PROMPTS:
            await self._add_prompt(section.value)
        for prompt in self.prompts:
            if prompt.system_prompt or prompt.is_absolute or prompt.marker:
                continue
            if prompt.identifier in _FILLED_ELSEWHERE:
                continue
            await self._add_prompt(prompt.identifier)

        # 10. Absolute-position prompts are collected, not emitted
        self.assembler.absolute_prompts = [p for p in self.prompts if p.is_absolute]
        if self.assembler.absolute_prompts:
            logger.debug(
                "Absolute-position prompts not placed: %s",
                [p.identifier for p in self.assembler.absolute_prompts],
            )

        # 11. Enhance definitions
        await self._add_prompt(Section.ENHANCE_DEFINITIONS.value)

        # 12. Bias
        if self.request.bias.strip():
            self._fill_prompt(Section.BIAS, self.request.bias, Role.ASSISTANT)
            await self._add_prompt(Section.BIAS.value)

        # 13. Summary and author's note go inside the main group
        for section in (Section.SUMMARY, Section.AUTHORS_NOTE):
            await self._inject_into_main(section)

        # 14-15. Dialogue examples with banner directives
        if self.request.message_examples or self.directives.has_banners:
            await self._populate_dialogue_examples()

        # 16. Control prompts close the list
        self.budget.free(self._control_reserved)
        self._control_reserved = 0
        if self.control.messages:
            self.assembler.add(self.control)

        # 17. Optional squash
        if self.config.generation.squash_system_messages:
            await self.assembler.squash_system_messages(self.composer.token_counter)

    # ── Helpers ───────────────────────────────────────────────

    async def _substitute(self, text: str) -> str:
        if not text:
            return ""
        user, char = self._names
        return await invoke("macro substitution", self.composer.substitute, text, user, char)

    async def _message(self, role: Role | str, content: str, identifier: str) -> Message:
        return await Message.create(role, content, identifier, self.composer.token_counter)

    async def _add_prompt(self, identifier: str) -> bool:
        """Add a stored prompt as its own group at its store slot."""
        if not self.prompts.has(identifier):
            return False
        prompt = self.prompts.get(identifier)
        if prompt.is_absolute:
            return False
        if identifier != Section.MAIN.value and self.composer.capabilities.is_disabled(identifier):
            logger.debug("Prompt %s disabled for this character", identifier)
            return False

        user, char = self._names
        try:
            message = await Message.from_prompt(
                prompt, self.composer.token_counter, self.composer.substitute, user, char
            )
        except CollaboratorFailure as e:
            logger.warning("Skipping prompt %s: %s", identifier, e)
            return False

        if not self.assembler.can_afford(message):
            logger.warning(
                "Skipping prompt %s: %d tokens, %d left", identifier, message.tokens, self.budget.remaining
            )
            return False
        self.assembler.add(Group(identifier, [message]), self.prompts.index(identifier))
        return True

    def _ensure_prompt(self, section: Section, at_start: bool = False) -> Prompt:
        if not self.prompts.has(section.value):
            prompt = Prompt(section.value, system_prompt=True)
            if at_start:
                self.prompts.insert(0, prompt)
            else:
                self.prompts.add(prompt)
            logger.debug("Created missing %s prompt", section)
        return self.prompts.get(section.value)

    def _fill_prompt(self, section: Section, content: str, role: Role = Role.SYSTEM) -> None:
        """Use request text for a prompt the store leaves empty."""
        if not self.prompts.has(section.value):
            self.prompts.add(Prompt(section.value, content, role=role, system_prompt=True))
        elif not self.prompts.get(section.value).content.strip():
            self.prompts.get(section.value).content = content

    # ── Directives ────────────────────────────────────────────

    async def _collect_directives(self) -> None:
        if self.request.exclude_directives:
            return
        try:
            self.directives = await invoke("directive source", self.composer.directives.collect)
        except CollaboratorFailure as e:
            logger.warning("No directives this turn: %s", e)
            return
        self.resolver = InjectionResolver(self.directives.depth_entries)

        entries = self.directives
        # Must exist before any group takes its slot
        if entries.depth_entries or entries.before_entries:
            self._ensure_prompt(Section.WORLD_INFO_BEFORE, at_start=True)

        if entries.before_entries:
            prompt = self.prompts.get(Section.WORLD_INFO_BEFORE.value)
            prompt.content = "\n".join([*entries.before_entries, prompt.content.strip()]).strip("\n")
        if entries.after_entries:
            prompt = self._ensure_prompt(Section.WORLD_INFO_AFTER)
            prompt.content = "\n".join([prompt.content.strip(), *entries.after_entries]).strip("\n")
        if (entries.note_top_entries or entries.note_bottom_entries) and self.prompts.has(
            Section.AUTHORS_NOTE.value
        ):
            prompt = self.prompts.get(Section.AUTHORS_NOTE.value)
            parts = [*entries.note_top_entries, prompt.content, *entries.note_bottom_entries]
            prompt.content = "\n".join(p for p in parts if p)

    async def _directive_message(self, instructions: list[str], identifier: str, role: Role = Role.SYSTEM) -> Message | None:
        try:
            text = await self._substitute("\n".join(instructions))
            return await self._message(role, text, identifier)
        except CollaboratorFailure as e:
            logger.warning("Skipping directive %s: %s", identifier, e)
            return None

    async def _flush_directives(self, has_user_message: bool) -> None:
        """Move directives that found no place into the before-context prompt."""
        if not len(self.resolver):
            return
        # Without a user turn nothing is consumed for good: everything goes up front
        instructions = self.resolver.pending_instructions(include_consumed=not has_user_message)
        if not instructions:
            return
        try:
            text = await self._substitute("\n".join(instructions))
        except CollaboratorFailure as e:
            logger.warning("Leftover directives dropped: %s", e)
            return
        prompt = self._ensure_prompt(Section.WORLD_INFO_BEFORE, at_start=True)
        existing = prompt.content.strip()
        prompt.content = f"{text}\n{existing}" if existing else text
        logger.debug("Flushed %d directive lines into %s", len(instructions), prompt.identifier)

    # ── Chat history ──────────────────────────────────────────

    async def _history_message(self, record: HistoryMessage, index: int, length: int) -> Message | None:
        """Build one history message; macro and transform failures propagate."""
        depth = length - index - 1
        content = await self._substitute(record.content)
        placement = Placement.USER_INPUT if record.role is Role.USER else Placement.AI_OUTPUT
        content = await invoke(
            "text transform",
            self.composer.transform.apply,
            content,
            placement,
            is_markdown=False,
            is_prompt=True,
            depth=depth,
        )
        try:
            message = await self._message(record.role, content, f"chatHistory-{length - index}")
            if self.config.generation.names_behavior is NamesBehavior.COMPLETION and record.name:
                name = self.composer.name_sanitizer(record.name)
                if name:
                    await message.set_name(name, self.composer.token_counter)
        except CollaboratorFailure as e:
            logger.warning("Skipping history message %d: %s", index, e)
            return None
        return message

    async def _populate_chat_history(self) -> None:
        history = Group(Section.CHAT_HISTORY.value)
        slot = self.prompts.index(Section.CHAT_HISTORY.value)
        if slot == -1:
            logger.info("No chatHistory slot in prompt store, appending history")
            self.assembler.add(history)
        else:
            self.assembler.add(history, slot)

        records = self.request.messages
        length = len(records)
        for index, record in enumerate(records):
            try:
                self._history.append(HistoryMessage.parse(record, index))
            except InvalidHistoryRecord as e:
                logger.warning("Skipping invalid history record: %s", e)
                self._history.append(None)

        # The newest turn is mandatory; older turns fill what is left
        newest_index = next((i for i in range(length - 1, -1, -1) if self._history[i]), None)
        newest: Message | None = None
        if newest_index is not None:
            newest = await self._history_message(self._history[newest_index], newest_index, length)
            if newest is not None:
                self.budget.reserve(newest.tokens, newest.identifier)

        banner = await self._new_chat_banner()

        truncated = False
        for index, record in enumerate(self._history):
            if record is None:
                continue
            is_newest = index == newest_index
            if truncated and not is_newest:
                continue
            depth = length - index - 1

            if is_newest:
                message = newest
            else:
                message = await self._history_message(record, index, length)
                if message is None:
                    continue

            await self._inject_at_depth(depth, record.role)

            if is_newest:
                if message is None:
                    continue
                self.budget.free(message.tokens)
            elif not self.assembler.can_afford(message):
                logger.warning(
                    "History truncated at message %d/%d: %d tokens left, "
                    "only the newest message is kept after this point",
                    index + 1, length, self.budget.remaining,
                )
                truncated = True
                continue
            self.assembler.insert_at_end(message, history.identifier)

        has_user_message = any(r is not None and r.role is Role.USER for r in self._history)
        await self._flush_directives(has_user_message)

        if banner is not None:
            self.budget.free(banner.tokens)
            self.assembler.insert_at_start(banner, history.identifier)

    async def _new_chat_banner(self) -> Message | None:
        try:
            text = await self._substitute(self.config.templates.new_chat_prompt)
            if not text.strip():
                return None
            banner = await self._message(Role.SYSTEM, text, "newMainChat")
        except CollaboratorFailure as e:
            logger.warning("Skipping new chat banner: %s", e)
            return None
        if not self.assembler.can_afford(banner):
            logger.warning("Skipping new chat banner: %d tokens, %d left", banner.tokens, self.budget.remaining)
            return None
        self.budget.reserve(banner.tokens, banner.identifier)
        return banner

    async def _inject_at_depth(self, depth: int, role: Role) -> None:
        entry = self.resolver.match(depth, role)
        if entry is None:
            return
        message = await self._directive_message(
            entry.instructions, f"directive-depth-{depth}-{role.value}", role
        )
        if message is None:
            return
        if not self.assembler.can_afford(message):
            logger.warning("Directive at depth %d skipped: %d tokens, %d left", depth, message.tokens, self.budget.remaining)
            return
        self.assembler.insert_at_end(message, Section.CHAT_HISTORY.value)
        self.resolver.consume(entry)

    # ── Control prompts ───────────────────────────────────────

    async def _build_control_prompts(self) -> None:
        request = self.request
        if request.type is GenerationType.IMPERSONATE:
            await self._add_control_prompt(Section.IMPERSONATE)

        if request.quiet_prompt:
            self._fill_prompt(Section.QUIET_PROMPT, request.quiet_prompt)
        await self._add_control_prompt(Section.QUIET_PROMPT)

        if request.type is GenerationType.CONTINUE:
            if self.config.generation.continue_prefill:
                await self._continue_prefill()
            await self._continue_nudge()

    async def _add_control_prompt(self, section: Section) -> None:
        if not self.prompts.has(section.value):
            return
        user, char = self._names
        try:
            message = await Message.from_prompt(
                self.prompts.get(section.value), self.composer.token_counter, self.composer.substitute, user, char
            )
        except CollaboratorFailure as e:
            logger.warning("Skipping control prompt %s: %s", section, e)
            return
        if message.content:
            self._place_control(message)

    def _place_control(self, message: Message) -> None:
        """Append to the control group, keeping the quiet prompt last."""
        messages = self.control.messages
        if messages and messages[-1].identifier == Section.QUIET_PROMPT.value:
            messages.insert(len(messages) - 1, message)
        else:
            messages.append(message)

    async def _continue_prefill(self) -> None:
        length = len(self._history)
        newest_index = next((i for i in range(length - 1, -1, -1) if self._history[i]), None)
        if newest_index is None:
            logger.debug("Continue requested with empty history, no prefill")
            return
        record = self._history[newest_index]

        content = record.content
        if record.role is Role.ASSISTANT:
            try:
                prefill = await self._substitute(self.config.generation.assistant_prefill)
            except CollaboratorFailure as e:
                logger.warning("Assistant prefill dropped: %s", e)
                prefill = ""
            content = "\n\n".join(part for part in (prefill, content) if part)

        try:
            message = await self._message(record.role, content, "continuePrefill")
        except CollaboratorFailure as e:
            logger.warning("Continue prefill skipped: %s", e)
            return

        # Frees the history copy so the message is not sent twice
        self.assembler.remove(Section.CHAT_HISTORY.value, f"chatHistory-{length - newest_index}")
        self.budget.reserve(message.tokens, message.identifier)
        self._control_reserved += message.tokens
        self._place_control(message)

    async def _continue_nudge(self) -> None:
        try:
            text = (await self._substitute(self.config.templates.continue_nudge_prompt)).strip()
            if not text:
                return
            message = await self._message(Role.SYSTEM, text, "continueNudge")
        except CollaboratorFailure as e:
            logger.warning("Skipping continue nudge: %s", e)
            return
        self._place_control(message)

    # ── Main-group injections ─────────────────────────────────

    async def _inject_into_main(self, section: Section) -> None:
        if not self.prompts.has(section.value):
            return
        prompt = self.prompts.get(section.value)
        if prompt.is_absolute:
            return
        user, char = self._names
        try:
            message = await Message.from_prompt(
                prompt, self.composer.token_counter, self.composer.substitute, user, char
            )
        except CollaboratorFailure as e:
            logger.warning("Skipping %s: %s", section, e)
            return
        if not message.content:
            return
        if not self.assembler.can_afford(message):
            logger.warning("Skipping %s: %d tokens, %d left", section, message.tokens, self.budget.remaining)
            return
        try:
            self.assembler.insert(message, Section.MAIN.value, prompt.injection_depth)
        except MissingIdentifier:
            logger.info("No main group to hold %s, skipped", section)

    # ── Dialogue examples ─────────────────────────────────────

    async def _populate_dialogue_examples(self) -> None:
        group_id = Section.DIALOGUE_EXAMPLES.value
        if not self.prompts.has(group_id):
            if not self.request.message_examples and self.directives.has_banners:
                self.prompts.add(Prompt(group_id, system_prompt=True, marker=True))
            else:
                logger.debug("No dialogueExamples slot, examples skipped")
                return
        self.assembler.add(Group(group_id), self.prompts.index(group_id))

        if self.directives.top_entries:
            top = await self._directive_message(self.directives.top_entries, "directive-top")
            if top is not None and self.assembler.can_afford(top):
                self.assembler.insert_at_start(top, group_id)

        for d, dialogue in enumerate(self.request.message_examples):
            batch = await self._example_batch(d, dialogue)
            if batch is None:
                continue
            if not self.assembler.can_afford_all(batch):
                logger.info(
                    "Dialogue examples stopped at %d/%d: budget exhausted",
                    d, len(self.request.message_examples),
                )
                break
            for message in batch:
                self.assembler.insert_at_end(message, group_id)

        if self.directives.bottom_entries:
            bottom = await self._directive_message(self.directives.bottom_entries, "directive-bottom")
            if bottom is not None and self.assembler.can_afford(bottom):
                self.assembler.insert_at_end(bottom, group_id)

    async def _example_batch(self, d: int, dialogue: list[Mapping[str, Any]]) -> list[Message] | None:
        """Banner plus one system message per turn, or None when unusable."""
        counter = self.composer.token_counter
        batch: list[Message] = []
        try:
            banner = await self._substitute(self.config.templates.new_example_chat_prompt)
            if banner.strip():
                batch.append(await self._message(Role.SYSTEM, banner, "newChat"))
            for t, raw in enumerate(dialogue):
                try:
                    turn = HistoryMessage.parse(raw, t)
                except InvalidHistoryRecord as e:
                    logger.warning("Skipping example turn in dialogue %d: %s", d, e)
                    continue
                message = await self._message(
                    Role.SYSTEM, await self._substitute(turn.content), f"dialogueExamples {d}-{t}"
                )
                name = self.composer.name_sanitizer(turn.name) if turn.name else None
                if name:
                    await message.set_name(name, counter)
                batch.append(message)
        except CollaboratorFailure as e:
            logger.warning("Skipping example dialogue %d: %s", d, e)
            return None
        return batch

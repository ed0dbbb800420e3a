"""Prompt composition building blocks.

Layout:
    budget.py        Budget: reserve / free / afford checks
    message.py       Role, Section, Message, Group, HistoryMessage
    assembler.py     Assembler: slotted groups + budget, flattened by get_chat()
    prompts.py       Prompt, PromptStore, Preset (markdown + YAML frontmatter on disk)
    injection.py     DepthEntry, DirectiveEntries, InjectionResolver
    preparation.py   CharacterCard -> per-request PromptStore

The orchestration that ties these together lives in `chatweave.core`.
"""

"""Entry point: python -m chatweave [compose|preset]

- "compose REQUEST.json": Build the message list for a request file, print it as JSON
- "preset":               Show the active preset's prompt order
- "preset export DIR":    Write the active preset as markdown files

Options: --config PATH (chatweave.toml), --tiktoken (count tokens with tiktoken)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

from chatweave.config import ChatweaveConfig, load_config

logger = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _pop_option(args: list[str], flag: str, takes_value: bool = False) -> str | bool | None:
    if flag not in args:
        return None
    i = args.index(flag)
    if not takes_value:
        del args[i]
        return True
    if i + 1 >= len(args):
        _usage()
    value = args[i + 1]
    del args[i : i + 2]
    return value


def _load_preset(config: ChatweaveConfig):
    from chatweave.compose.prompts import Preset, default_preset

    if config.preset_dir:
        return Preset.load(config.preset_dir)
    return default_preset()


def _run_compose(config: ChatweaveConfig, request_path: Path, use_tiktoken: bool) -> None:
    from chatweave.collaborators.defaults import StaticCapabilities, StaticDirectiveSource
    from chatweave.compose.injection import DirectiveEntries
    from chatweave.compose.preparation import CharacterCard, ExtensionPrompt, prepare_prompts
    from chatweave.core import Composer, CompositionRequest
    from chatweave.errors import CompositionError

    data = json.loads(request_path.read_text(encoding="utf-8"))
    card = CharacterCard.from_dict(data.get("character", {}))
    capabilities = StaticCapabilities(
        user_name=data.get("user_name", "User"),
        char_name=card.name,
        disabled=set(data.get("disabled", [])),
    )

    token_counter = None
    if use_tiktoken:
        from chatweave.collaborators.tiktoken_counter import TiktokenCounter

        token_counter = TiktokenCounter()

    request = CompositionRequest.from_dict(data)
    if not request.message_examples:
        request.message_examples = card.message_examples

    prompts = prepare_prompts(
        _load_preset(config),
        card,
        templates=config.templates,
        capabilities=capabilities,
        world_info_before=data.get("world_info_before", ""),
        world_info_after=data.get("world_info_after", ""),
        quiet_prompt=request.quiet_prompt,
        bias=request.bias,
        summary=ExtensionPrompt.from_dict(data["summary"]) if data.get("summary") else None,
        authors_note=ExtensionPrompt.from_dict(data["authors_note"]) if data.get("authors_note") else None,
        persona_description=data.get("persona_description", ""),
    )
    composer = Composer(
        config,
        capabilities=capabilities,
        token_counter=token_counter,
        directives=StaticDirectiveSource(DirectiveEntries.from_dict(data.get("directives", {}))),
    )

    try:
        chat = asyncio.run(composer.compose(prompts, request))
    except CompositionError as e:
        logger.error("Composition failed: %s", e)
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(chat, ensure_ascii=False, indent=2))


def _run_preset(config: ChatweaveConfig, args: list[str]) -> None:
    preset = _load_preset(config)
    if args and args[0] == "export":
        if len(args) < 2:
            _usage()
        for path in preset.dump(Path(args[1])):
            print(path)
        return
    disabled = set(preset.disabled)
    for entry in preset.entries:
        flag = " " if entry.prompt.identifier not in disabled else "-"
        print(f"{flag} {entry.prompt.identifier:<20} {entry.prompt.name}")


def _usage() -> None:
    print("Usage: python -m chatweave [compose REQUEST.json|preset [export DIR]] [--config PATH] [--tiktoken]")
    print("  compose  — Build the message list for a request file")
    print("  preset   — Show or export the active preset")
    sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    args = list(sys.argv[1:] if argv is None else argv)
    config_path = _pop_option(args, "--config", takes_value=True)
    use_tiktoken = bool(_pop_option(args, "--tiktoken"))

    config = load_config(Path(config_path) if isinstance(config_path, str) else None)
    _setup_logging(config.log_level)

    cmd = args[0] if args else ""
    if cmd == "compose" and len(args) == 2:
        _run_compose(config, Path(args[1]), use_tiktoken)
    elif cmd == "preset":
        _run_preset(config, args[1:])
    else:
        _usage()


if __name__ == "__main__":
    main()

"""Tests for the Composer."""

import logging

import pytest

from chatweave.collaborators.base import NamesBehavior
from chatweave.collaborators.defaults import StaticCapabilities, StaticDirectiveSource
from chatweave.compose.injection import DepthEntry, DirectiveEntries
from chatweave.compose.message import Role
from chatweave.compose.prompts import InjectionPosition, Prompt, PromptStore
from chatweave.config import BudgetConfig, ChatweaveConfig, GenerationConfig, TemplateConfig
from chatweave.core import Composer, CompositionRequest, GenerationType, compose
from chatweave.errors import BudgetExceeded, CollaboratorFailure


def count(role, content, name=None):
    """One token per character, names included."""
    return len(content) + (len(name) if name else 0)


class FailingTransform:
    def apply(self, text, placement, **kwargs):
        raise ValueError("transform broke")


def make_config(max_context=4095, max_tokens=300, **generation) -> ChatweaveConfig:
    return ChatweaveConfig(
        budget=BudgetConfig(max_context=max_context, max_tokens=max_tokens, reply_priming_tokens=3),
        generation=GenerationConfig(**generation),
        templates=TemplateConfig(new_chat_prompt="", new_example_chat_prompt="EX"),
    )


def basic_store() -> PromptStore:
    return PromptStore([
        Prompt("main", "MAIN", system_prompt=True),
        Prompt("worldInfoBefore", "", system_prompt=True),
        Prompt("dialogueExamples", system_prompt=True, marker=True),
        Prompt("chatHistory", system_prompt=True, marker=True),
        Prompt("jailbreak", "JB", system_prompt=True),
    ])


def make_composer(config=None, entries=None, **kwargs) -> Composer:
    kwargs.setdefault("token_counter", count)
    kwargs.setdefault("capabilities", StaticCapabilities(user_name="Ann", char_name="Bot"))
    return Composer(
        config or make_config(),
        directives=StaticDirectiveSource(entries or DirectiveEntries()),
        **kwargs,
    )


def contents(chat):
    return [m["content"] for m in chat]


@pytest.fixture
def composer() -> Composer:
    return make_composer()


class TestOrdering:
    @pytest.mark.asyncio
    async def test_groups_follow_store_slots(self, composer: Composer):
        request = CompositionRequest(messages=[
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "yo"},
        ])
        chat = await composer.compose(basic_store(), request)
        assert chat == [
            {"role": "system", "content": "MAIN"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "yo"},
            {"role": "system", "content": "JB"},
        ]

    @pytest.mark.asyncio
    async def test_user_relative_prompt_takes_its_slot(self, composer: Composer):
        store = basic_store()
        store.insert(1, Prompt("custom", "CUSTOM", role=Role.USER))
        chat = await composer.compose(store, CompositionRequest())
        assert chat[:2] == [
            {"role": "system", "content": "MAIN"},
            {"role": "user", "content": "CUSTOM"},
        ]

    @pytest.mark.asyncio
    async def test_deterministic(self, composer: Composer):
        store = basic_store()
        entries = DirectiveEntries(depth_entries=[DepthEntry(0, Role.SYSTEM, ["X"])])
        composer = make_composer(entries=entries)
        request = CompositionRequest(messages=[{"role": "assistant", "content": "hello"}])
        first = await composer.compose(store, request)
        second = await composer.compose(store, request)
        assert first == second
        # The caller's store is left as it was
        assert store.get("worldInfoBefore").content == ""

    @pytest.mark.asyncio
    async def test_macros_substituted(self, composer: Composer):
        store = PromptStore([Prompt("main", "{{char}} helps {{user}}", system_prompt=True)])
        chat = await composer.compose(store, CompositionRequest())
        assert contents(chat) == ["Bot helps Ann"]

    @pytest.mark.asyncio
    async def test_module_level_compose(self):
        chat = await compose(
            basic_store(),
            CompositionRequest(messages=[{"role": "user", "content": "hi"}]),
            config=make_config(),
            token_counter=count,
        )
        assert contents(chat) == ["MAIN", "hi", "JB"]


class TestSkipping:
    @pytest.mark.asyncio
    async def test_disabled_prompt_skipped_but_main_kept(self):
        caps = StaticCapabilities(user_name="Ann", char_name="Bot", disabled={"main", "jailbreak"})
        composer = make_composer(capabilities=caps)
        chat = await composer.compose(basic_store(), CompositionRequest())
        assert contents(chat) == ["MAIN"]

    @pytest.mark.asyncio
    async def test_absolute_prompts_collected_not_emitted(self, composer: Composer):
        store = basic_store()
        store.add(Prompt("pinned", "PINNED", injection_position=InjectionPosition.ABSOLUTE))
        assembler = composer.new_assembler()
        chat = await composer.compose(store, CompositionRequest(), assembler)
        assert "PINNED" not in contents(chat)
        assert [p.identifier for p in assembler.absolute_prompts] == ["pinned"]

    @pytest.mark.asyncio
    async def test_bias_added_only_when_non_blank(self, composer: Composer):
        chat = await composer.compose(basic_store(), CompositionRequest(bias="   "))
        assert contents(chat) == ["MAIN", "JB"]

        chat = await composer.compose(basic_store(), CompositionRequest(bias="Sure,"))
        assert chat[-1] == {"role": "assistant", "content": "Sure,"}

    @pytest.mark.asyncio
    async def test_token_counter_failure_skips_prompt(self):
        def flaky(role, content, name=None):
            if content == "MAIN":
                raise RuntimeError("boom")
            return len(content)

        composer = make_composer(token_counter=flaky)
        chat = await composer.compose(
            basic_store(), CompositionRequest(messages=[{"role": "user", "content": "hi"}])
        )
        assert contents(chat) == ["hi", "JB"]

    @pytest.mark.asyncio
    async def test_transform_failure_on_history_propagates(self):
        composer = make_composer(transform=FailingTransform())
        with pytest.raises(CollaboratorFailure):
            await composer.compose(
                basic_store(), CompositionRequest(messages=[{"role": "user", "content": "hi"}])
            )


class TestBudget:
    @pytest.mark.asyncio
    async def test_exact_budget_succeeds(self):
        # priming (3) + cost("hi") (2)
        composer = make_composer(make_config(max_context=5, max_tokens=0))
        chat = await composer.compose(
            basic_store(), CompositionRequest(messages=[{"role": "user", "content": "hi"}])
        )
        assert chat == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_one_token_short_raises(self):
        composer = make_composer(make_config(max_context=4, max_tokens=0))
        with pytest.raises(BudgetExceeded) as exc:
            await composer.compose(
                basic_store(), CompositionRequest(messages=[{"role": "user", "content": "hi"}])
            )
        assert exc.value.identifier == "chatHistory-1"

    @pytest.mark.asyncio
    async def test_priming_alone_can_exhaust(self):
        composer = make_composer(make_config(max_context=2, max_tokens=0))
        with pytest.raises(BudgetExceeded):
            await composer.compose(basic_store(), CompositionRequest())

    @pytest.mark.asyncio
    async def test_total_cost_within_budget(self):
        composer = make_composer(make_config(max_context=40, max_tokens=10))
        messages = [{"role": "user", "content": f"message {i}"} for i in range(10)]
        assembler = composer.new_assembler()
        await composer.compose(basic_store(), CompositionRequest(messages=messages), assembler)
        assert assembler.budget.remaining >= 0
        assert assembler.total_tokens + 3 <= 30

    @pytest.mark.asyncio
    async def test_old_history_dropped_newest_kept(self):
        composer = make_composer(make_config(max_context=13, max_tokens=0))
        store = PromptStore([Prompt("chatHistory", system_prompt=True, marker=True)])
        request = CompositionRequest(messages=[
            {"role": "user", "content": "a" * 50},
            {"role": "assistant", "content": "b"},
            {"role": "user", "content": "c"},
        ])
        chat = await composer.compose(store, request)
        assert contents(chat) == ["c"]

    @pytest.mark.asyncio
    async def test_truncation_leaves_gap_before_newest(self, caplog):
        # 10 tokens after priming; four 4-token messages
        composer = make_composer(make_config(max_context=13, max_tokens=0))
        store = PromptStore([Prompt("chatHistory", system_prompt=True, marker=True)])
        request = CompositionRequest(messages=[
            {"role": "user", "content": "OLD1"},
            {"role": "assistant", "content": "MID2"},
            {"role": "user", "content": "MID3"},
            {"role": "assistant", "content": "NEW4"},
        ])
        with caplog.at_level(logging.WARNING, logger="chatweave.core"):
            chat = await composer.compose(store, request)
        assert contents(chat) == ["OLD1", "NEW4"]
        assert "only the newest message is kept" in caplog.text


class TestHistory:
    @pytest.mark.asyncio
    async def test_invalid_records_skipped(self, composer: Composer):
        request = CompositionRequest(messages=[
            {"role": "user"},
            {"content": "no role"},
            {"role": "narrator", "content": "bad role"},
            {"role": "user", "content": "ok"},
        ])
        chat = await composer.compose(basic_store(), request)
        assert contents(chat) == ["MAIN", "ok", "JB"]

    @pytest.mark.asyncio
    async def test_non_string_name_skipped_in_completion_mode(self):
        composer = make_composer(make_config(names_behavior=NamesBehavior.COMPLETION))
        request = CompositionRequest(messages=[
            {"role": "user", "content": "bad", "name": 42},
            {"role": "user", "content": "ok", "name": "Ann"},
        ])
        chat = await composer.compose(basic_store(), request)
        assert contents(chat) == ["MAIN", "ok", "JB"]
        assert chat[1]["name"] == "Ann"

    @pytest.mark.asyncio
    async def test_names_in_completion_mode(self):
        composer = make_composer(make_config(names_behavior=NamesBehavior.COMPLETION))
        request = CompositionRequest(messages=[{"role": "user", "content": "hi", "name": "Ann Smith"}])
        chat = await composer.compose(basic_store(), request)
        assert {"role": "user", "content": "hi", "name": "Ann_Smith"} in chat

    @pytest.mark.asyncio
    async def test_names_ignored_by_default(self, composer: Composer):
        request = CompositionRequest(messages=[{"role": "user", "content": "hi", "name": "Ann"}])
        chat = await composer.compose(basic_store(), request)
        assert {"role": "user", "content": "hi"} in chat

    @pytest.mark.asyncio
    async def test_new_chat_banner_leads_history(self):
        config = make_config()
        config.templates.new_chat_prompt = "[Start with {{char}}]"
        composer = make_composer(config)
        chat = await composer.compose(
            basic_store(), CompositionRequest(messages=[{"role": "user", "content": "hi"}])
        )
        assert contents(chat) == ["MAIN", "[Start with Bot]", "hi", "JB"]

    @pytest.mark.asyncio
    async def test_history_without_slot_is_appended(self, composer: Composer):
        store = PromptStore([Prompt("main", "MAIN", system_prompt=True)])
        chat = await composer.compose(store, CompositionRequest(messages=[{"role": "user", "content": "hi"}]))
        assert contents(chat) == ["MAIN", "hi"]


class TestDirectives:
    @pytest.mark.asyncio
    async def test_depth_entries_land_before_their_message(self):
        entries = DirectiveEntries(depth_entries=[
            DepthEntry(0, Role.ASSISTANT, ["D0"]),
            DepthEntry(1, Role.USER, ["D1"]),
        ])
        composer = make_composer(entries=entries)
        request = CompositionRequest(messages=[
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
        ])
        chat = await composer.compose(basic_store(), request)
        assert chat == [
            {"role": "system", "content": "MAIN"},
            {"role": "user", "content": "D1"},
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "D0"},
            {"role": "assistant", "content": "b"},
            {"role": "system", "content": "JB"},
        ]

    @pytest.mark.asyncio
    async def test_entry_consumed_at_most_once(self):
        entries = DirectiveEntries(depth_entries=[DepthEntry(0, Role.ASSISTANT, ["D"])])
        composer = make_composer(entries=entries)
        request = CompositionRequest(messages=[
            {"role": "user", "content": "u"},
            {"role": "assistant", "content": "x"},
        ])
        chat = await composer.compose(basic_store(), request)
        assert contents(chat).count("D") == 1

    @pytest.mark.asyncio
    async def test_depth_one_system_entry_lands_at_depth_zero(self):
        entries = DirectiveEntries(depth_entries=[DepthEntry(1, Role.SYSTEM, ["S"])])
        composer = make_composer(entries=entries)
        chat = await composer.compose(
            basic_store(), CompositionRequest(messages=[{"role": "user", "content": "u"}])
        )
        assert contents(chat) == ["MAIN", "S", "u", "JB"]
        assert chat[1]["role"] == "user"

    @pytest.mark.asyncio
    async def test_empty_history_flushes_into_before_context(self):
        entries = DirectiveEntries(depth_entries=[DepthEntry(0, Role.SYSTEM, ["X"])])
        composer = make_composer(entries=entries)
        store = basic_store()
        store.get("worldInfoBefore").content = "lore"
        chat = await composer.compose(store, CompositionRequest())
        assert contents(chat) == ["MAIN", "X\nlore", "JB"]

    @pytest.mark.asyncio
    async def test_before_context_created_when_missing(self):
        entries = DirectiveEntries(depth_entries=[DepthEntry(0, Role.SYSTEM, ["X"])])
        composer = make_composer(entries=entries)
        store = PromptStore([
            Prompt("main", "MAIN", system_prompt=True),
            Prompt("chatHistory", system_prompt=True, marker=True),
        ])
        chat = await composer.compose(store, CompositionRequest())
        assert contents(chat) == ["X", "MAIN"]

    @pytest.mark.asyncio
    async def test_unmatched_entries_flushed_when_user_spoke(self):
        entries = DirectiveEntries(depth_entries=[DepthEntry(5, Role.USER, ["far"])])
        composer = make_composer(entries=entries)
        chat = await composer.compose(
            basic_store(), CompositionRequest(messages=[{"role": "user", "content": "u"}])
        )
        assert contents(chat) == ["MAIN", "far", "u", "JB"]

    @pytest.mark.asyncio
    async def test_excluded_directives_ignored(self):
        entries = DirectiveEntries(
            depth_entries=[DepthEntry(0, Role.SYSTEM, ["X"])],
            top_entries=["TOP"],
        )
        composer = make_composer(entries=entries)
        chat = await composer.compose(
            basic_store(),
            CompositionRequest(messages=[{"role": "user", "content": "u"}], exclude_directives=True),
        )
        assert contents(chat) == ["MAIN", "u", "JB"]

    @pytest.mark.asyncio
    async def test_before_and_after_entries(self):
        entries = DirectiveEntries(before_entries=["B"], after_entries=["A"])
        composer = make_composer(entries=entries)
        store = basic_store()
        store.insert(2, Prompt("worldInfoAfter", "after", system_prompt=True))
        store.get("worldInfoBefore").content = "before"
        chat = await composer.compose(store, CompositionRequest())
        assert contents(chat) == ["MAIN", "B\nbefore", "after\nA", "JB"]


class TestControlPrompts:
    @pytest.mark.asyncio
    async def test_control_prompts_last(self, composer: Composer):
        store = basic_store()
        store.add(Prompt("impersonate", "IMP", system_prompt=True))
        request = CompositionRequest(
            messages=[{"role": "user", "content": "hi"}],
            type=GenerationType.IMPERSONATE,
            quiet_prompt="Q",
            bias="B",
        )
        chat = await composer.compose(store, request)
        assert contents(chat)[-2:] == ["IMP", "Q"]

    @pytest.mark.asyncio
    async def test_impersonation_only_for_impersonate(self, composer: Composer):
        store = basic_store()
        store.add(Prompt("impersonate", "IMP", system_prompt=True))
        chat = await composer.compose(store, CompositionRequest())
        assert "IMP" not in contents(chat)

    @pytest.mark.asyncio
    async def test_continue_prefill_moves_last_message(self):
        composer = make_composer(make_config(continue_prefill=True, assistant_prefill="PRE"))
        request = CompositionRequest(
            messages=[{"role": "assistant", "content": "..."}],
            type="continue",
        )
        chat = await composer.compose(basic_store(), request)
        assert chat[-1] == {"role": "assistant", "content": "PRE\n\n..."}
        assert "..." not in contents(chat)[:-1]

    @pytest.mark.asyncio
    async def test_prefill_not_prepended_for_user_message(self):
        composer = make_composer(make_config(continue_prefill=True, assistant_prefill="PRE"))
        request = CompositionRequest(messages=[{"role": "user", "content": "u"}], type="continue")
        chat = await composer.compose(basic_store(), request)
        assert chat[-1] == {"role": "user", "content": "u"}

    @pytest.mark.asyncio
    async def test_nudge_between_prefill_and_quiet(self):
        config = make_config(continue_prefill=True)
        config.templates.continue_nudge_prompt = "  Continue, {{char}}.  "
        composer = make_composer(config)
        request = CompositionRequest(
            messages=[{"role": "assistant", "content": "half"}],
            type=GenerationType.CONTINUE,
            quiet_prompt="Q",
        )
        chat = await composer.compose(basic_store(), request)
        assert contents(chat)[-3:] == ["half", "Continue, Bot.", "Q"]

    @pytest.mark.asyncio
    async def test_continue_without_prefill_keeps_history(self):
        config = make_config()
        config.templates.continue_nudge_prompt = "NUDGE"
        composer = make_composer(config)
        request = CompositionRequest(messages=[{"role": "assistant", "content": "half"}], type="continue")
        chat = await composer.compose(basic_store(), request)
        assert contents(chat) == ["MAIN", "half", "JB", "NUDGE"]

    @pytest.mark.asyncio
    async def test_control_group_is_mandatory(self):
        composer = make_composer(make_config(max_context=8, max_tokens=0))
        store = PromptStore([Prompt("chatHistory", system_prompt=True, marker=True)])
        with pytest.raises(BudgetExceeded):
            await composer.compose(store, CompositionRequest(quiet_prompt="a much too long quiet prompt"))


class TestMainInjections:
    @pytest.mark.asyncio
    async def test_summary_and_note_wrap_main(self, composer: Composer):
        store = basic_store()
        store.add(Prompt("summary", "SUM", system_prompt=True, injection_depth=4))
        store.add(Prompt("authorsNote", "NOTE", system_prompt=True, injection_depth=0))
        chat = await composer.compose(store, CompositionRequest())
        assert contents(chat) == ["SUM", "MAIN", "NOTE", "JB"]

    @pytest.mark.asyncio
    async def test_skipped_without_main(self, composer: Composer):
        store = PromptStore([
            Prompt("chatHistory", system_prompt=True, marker=True),
            Prompt("authorsNote", "NOTE", system_prompt=True),
        ])
        chat = await composer.compose(store, CompositionRequest(messages=[{"role": "user", "content": "u"}]))
        assert contents(chat) == ["u"]

    @pytest.mark.asyncio
    async def test_note_wrapped_by_directives(self):
        entries = DirectiveEntries(note_top_entries=["T"], note_bottom_entries=["B"])
        composer = make_composer(entries=entries)
        store = basic_store()
        store.add(Prompt("authorsNote", "NOTE", system_prompt=True, injection_depth=0))
        chat = await composer.compose(store, CompositionRequest())
        assert "T\nNOTE\nB" in contents(chat)


class TestDialogueExamples:
    def examples(self, *texts):
        return [[{"role": "user", "content": t, "name": "example_user"}] for t in texts]

    @pytest.mark.asyncio
    async def test_examples_all_or_nothing(self):
        # banner (2) + "aaaa" named example_user (16) = 18 per dialogue, 28 left after priming
        composer = make_composer(make_config(max_context=31, max_tokens=0))
        store = PromptStore([
            Prompt("dialogueExamples", system_prompt=True, marker=True),
            Prompt("chatHistory", system_prompt=True, marker=True),
        ])
        request = CompositionRequest(message_examples=self.examples("aaaa", "bbbb"))
        chat = await composer.compose(store, request)
        assert chat == [
            {"role": "system", "content": "EX"},
            {"role": "system", "content": "aaaa", "name": "example_user"},
        ]

    @pytest.mark.asyncio
    async def test_unaffordable_first_dialogue_stops_all(self):
        composer = make_composer(make_config(max_context=31, max_tokens=0))
        store = PromptStore([Prompt("dialogueExamples", system_prompt=True, marker=True)])
        request = CompositionRequest(message_examples=self.examples("a" * 40, "b"))
        chat = await composer.compose(store, request)
        assert chat == []

    @pytest.mark.asyncio
    async def test_no_slot_no_examples(self, composer: Composer):
        store = PromptStore([Prompt("main", "MAIN", system_prompt=True)])
        chat = await composer.compose(store, CompositionRequest(message_examples=self.examples("ex")))
        assert contents(chat) == ["MAIN"]

    @pytest.mark.asyncio
    async def test_banner_entries_wrap_examples(self):
        entries = DirectiveEntries(top_entries=["TOP"], bottom_entries=["BOTTOM"])
        composer = make_composer(entries=entries)
        request = CompositionRequest(message_examples=self.examples("hello"))
        chat = await composer.compose(basic_store(), request)
        assert contents(chat) == ["MAIN", "TOP", "EX", "hello", "BOTTOM", "JB"]

    @pytest.mark.asyncio
    async def test_banner_entries_register_missing_slot(self):
        entries = DirectiveEntries(top_entries=["TOP"], bottom_entries=["BOTTOM"])
        composer = make_composer(entries=entries)
        store = PromptStore([
            Prompt("main", "MAIN", system_prompt=True),
            Prompt("chatHistory", system_prompt=True, marker=True),
        ])
        chat = await composer.compose(store, CompositionRequest(messages=[{"role": "user", "content": "hi"}]))
        assert contents(chat) == ["MAIN", "hi", "TOP", "BOTTOM"]


class TestSquash:
    @pytest.mark.asyncio
    async def test_consecutive_system_messages_merged(self):
        composer = make_composer(make_config(squash_system_messages=True))
        store = PromptStore([
            Prompt("worldInfoBefore", "W", system_prompt=True),
            Prompt("main", "M", system_prompt=True),
            Prompt("chatHistory", system_prompt=True, marker=True),
        ])
        chat = await composer.compose(store, CompositionRequest(messages=[{"role": "user", "content": "hi"}]))
        assert chat == [
            {"role": "system", "content": "W\nM"},
            {"role": "user", "content": "hi"},
        ]

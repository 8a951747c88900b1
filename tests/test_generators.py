"""
Prompt context assembly and the generate/extract capability adapters.
"""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from canon_state import CanonStateStore
from context import build_prompt_context, chunk_target_words
from delta_parser import parse_delta
from errors import ExtractionError, GenerationError
from generators import (
    LLMChunkGenerator,
    LLMDeltaExtractor,
    TemplateChunkGenerator,
    TemplateDeltaExtractor,
    build_generation_messages,
    count_words,
)


class FakeChatModel:
    """Stands in for a chat model: records messages, returns a canned reply."""

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.messages = []

    def invoke(self, messages):
        self.messages.append(messages)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def snapshot():
    store = CanonStateStore()
    store.initialize("sess-ctx", {"rule_count": 2, "location": "gas station"})
    store.add_rule(None, "Never turn off the radio", chunk_index=1)
    for i in range(12):
        store.append_timeline_commitment(f"event {i}")
    return store.snapshot()


class TestPromptContext:

    def test_first_chunk(self, snapshot):
        ctx = build_prompt_context(
            user_params={"location": "gas station"},
            state_snapshot=snapshot,
            chunk_index=1,
            cumulative_word_count=0,
            target_words=3000,
            chunk_words=1000,
            previous_prose="ignored on the first chunk",
        )
        assert ctx["is_first_chunk"] is True
        assert ctx["is_final_chunk"] is False
        assert ctx["previous_prose"] == ""
        assert ctx["continuation_instructions"] is None
        assert ctx["target_words"] == 1000

    def test_context_is_bounded(self, snapshot):
        ctx = build_prompt_context(
            user_params={},
            state_snapshot=snapshot,
            chunk_index=3,
            cumulative_word_count=2500,
            target_words=3000,
            chunk_words=1000,
            previous_prose="x" * 5000,
            context_chars=300,
            timeline_recent_k=4,
        )
        assert len(ctx["previous_prose"]) == 300
        assert ctx["recent_timeline"] == ["event 8", "event 9", "event 10", "event 11"]
        assert ctx["timeline_total"] == 12
        assert ctx["is_final_chunk"] is True
        assert ctx["target_words"] == 500
        assert ctx["final_chunk_instructions"]

    def test_only_established_rules_are_included(self, snapshot):
        ctx = build_prompt_context(
            user_params={}, state_snapshot=snapshot, chunk_index=2,
            cumulative_word_count=100, target_words=3000, chunk_words=1000,
        )
        assert [r["rule_id"] for r in ctx["active_rules"]] == ["rule_1"]

    def test_chunk_target_words_never_drops_to_zero(self):
        assert chunk_target_words(target_words=1000, cumulative_word_count=1000, chunk_words=400) == 400
        assert chunk_target_words(target_words=1000, cumulative_word_count=900, chunk_words=400) == 100


class TestLLMAdapters:

    def test_generation_messages_carry_state(self, snapshot):
        ctx = build_prompt_context(
            user_params={"location": "gas station"}, state_snapshot=snapshot, chunk_index=2,
            cumulative_word_count=1000, target_words=3000, chunk_words=1000, previous_prose="The pump clicked.",
        )
        system, human = build_generation_messages(ctx)
        assert isinstance(system, SystemMessage)
        assert isinstance(human, HumanMessage)
        assert "Never turn off the radio" in human.content
        assert "The pump clicked." in human.content

    def test_generator_returns_prose_and_usage(self):
        reply = AIMessage(
            content="  The lights flickered twice.  ",
            response_metadata={"finish_reason": "stop", "token_usage": {"total_tokens": 42}},
        )
        llm = FakeChatModel(reply=reply)
        out = LLMChunkGenerator(llm).generate({"chunk_index": 1, "target_words": 10}, {}, 1)
        assert out["prose"] == "The lights flickered twice."
        assert out["word_count"] == 4
        assert out["finish_reason"] == "stop"
        assert out["usage"] == {"total_tokens": 42}

    def test_generator_wraps_failures(self):
        llm = FakeChatModel(error=ConnectionError("connection reset"))
        with pytest.raises(GenerationError):
            LLMChunkGenerator(llm).generate({}, {}, 3)

    def test_extractor_returns_raw_delta_text(self):
        llm = FakeChatModel(reply=AIMessage(content="RULE_VIOLATIONS:\n- rule_1: violated\n"))
        text = LLMDeltaExtractor(llm).extract("He opened the trunk.", {"rules": []})
        assert parse_delta(text, 1).rule_violations == ["rule_1"]
        assert "He opened the trunk." in llm.messages[0][1].content

    def test_extractor_wraps_failures(self):
        with pytest.raises(ExtractionError):
            LLMDeltaExtractor(FakeChatModel(error=ValueError("bad request"))).extract("prose", {})

    def test_extractor_does_not_retry_transport_errors(self):
        llm = FakeChatModel(error=ConnectionError("connection reset"))
        with pytest.raises(ExtractionError):
            LLMDeltaExtractor(llm).extract("prose", {})
        assert len(llm.messages) == 1


class TestTemplateMode:

    def test_template_generator_hits_target(self, snapshot):
        out = TemplateChunkGenerator().generate({"target_words": 120}, snapshot, 2)
        assert out["word_count"] == 120
        assert count_words(out["prose"]) == 120
        assert out["prose"].startswith("Chunk 2 at gas station.")

    def test_template_extractor_yields_empty_delta(self):
        text = TemplateDeltaExtractor().extract("anything", {})
        delta = parse_delta(text, 1)
        assert delta.is_empty()
        assert delta.warnings == []

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from context import render_state_digest
from delta_parser import StateDelta, format_delta
from errors import ExtractionError, GenerationError


def count_words(text: str) -> int:
    """按空白切分计数；空文本为 0。"""
    return len((text or "").split())


def extract_finish_reason_and_usage(resp: Any) -> Tuple[Optional[str], Dict[str, Any]]:
    """
    兼容 langchain-openai / OpenAI兼容返回结构：
    - finish_reason 常见为 "stop" / "length" / "content_filter"
    - token_usage 常见为 {"prompt_tokens":..., "completion_tokens":..., "total_tokens":...}
    """
    meta = getattr(resp, "response_metadata", None) or {}
    if not isinstance(meta, dict):
        meta = {}
    finish_reason = meta.get("finish_reason")
    if finish_reason is None:
        gen = meta.get("generation_info")
        if isinstance(gen, dict):
            finish_reason = gen.get("finish_reason")
    usage = meta.get("token_usage") or meta.get("usage") or {}
    if not isinstance(usage, dict):
        usage = {}
    return (str(finish_reason) if finish_reason is not None else None, usage)


def _model_name(llm: Any) -> Optional[str]:
    return getattr(llm, "model_name", None) or getattr(llm, "model", None)


def _response_text(resp: Any) -> str:
    content = getattr(resp, "content", resp)
    if isinstance(content, list):
        # 部分实现返回 content blocks
        parts = []
        for block in content:
            if isinstance(block, dict):
                parts.append(str(block.get("text", "") or ""))
            else:
                parts.append(str(block))
        return "".join(parts)
    return str(content or "")


GENERATION_SYSTEM_PROMPT = (
    "You are writing one chunk of a long-form story that is generated sequentially.\n"
    "Stay consistent with every established rule, capability, irreversible flag, world fact "
    "and timeline commitment listed below. Never contradict them.\n"
    "Output prose only: no headings, no notes, no summaries."
)


def build_generation_messages(prompt_context: Dict[str, Any]) -> list:
    from langchain_core.messages import HumanMessage, SystemMessage

    params = prompt_context.get("user_params") or {}
    parts = []
    if params:
        parts.append("STORY PARAMETERS:")
        for k, v in params.items():
            if k == "rules" or v in (None, "", [], {}):
                continue
            parts.append(f"- {k}: {v}")
    parts.append("")
    parts.append(render_state_digest(prompt_context))
    parts.append("")
    parts.append(
        f"CHUNK {prompt_context.get('chunk_index')}: write about {prompt_context.get('target_words')} words "
        f"({prompt_context.get('cumulative_word_count')} of {prompt_context.get('total_target_words')} written so far)."
    )
    if prompt_context.get("is_first_chunk"):
        parts.append("This is the opening of the story.")
    if prompt_context.get("continuation_instructions"):
        parts.append(str(prompt_context["continuation_instructions"]))
    if prompt_context.get("final_chunk_instructions"):
        parts.append(str(prompt_context["final_chunk_instructions"]))
    if prompt_context.get("previous_prose"):
        parts.append("")
        parts.append("END OF PREVIOUS CHUNK:")
        parts.append(str(prompt_context["previous_prose"]))
    return [SystemMessage(content=GENERATION_SYSTEM_PROMPT), HumanMessage(content="\n".join(parts))]


EXTRACTION_SYSTEM_PROMPT = (
    "Extract state changes from a story chunk. Be precise and literal: only include changes "
    "EXPLICITLY shown in the prose. Answer in exactly this format, writing None for an empty section:\n"
    "RULES_INTRODUCED:\n"
    '- "exact rule text" [boundary|temporal|behavioral|object_interaction|procedural]\n'
    "RULE_VIOLATIONS:\n"
    "- rule_1: violated\n"
    "ENTITY_CAPABILITIES:\n"
    "- capability_name: true\n"
    "IRREVERSIBLE_FLAGS:\n"
    "- flag_name: true\n"
    "WORLD_FACTS:\n"
    '- fact_key: "value"\n'
    "TIMELINE_COMMITMENTS:\n"
    '- "concrete event with a time marker"'
)


def build_extraction_messages(prose: str, state: Dict[str, Any], *, max_prose_chars: int = 12000) -> list:
    from langchain_core.messages import HumanMessage, SystemMessage

    rules = [
        f"{r.get('rule_id')}: {str(r.get('text') or '')[:80]}"
        for r in (state.get("rules") or [])
        if r.get("active") and str(r.get("text") or "").strip()
    ]
    flags = ", ".join(f"{k}={v}" for k, v in (state.get("irreversible_flags") or {}).items())
    human = (
        "ACTIVE RULES:\n"
        + ("\n".join(rules) if rules else "None established yet")
        + f"\n\nCURRENT IRREVERSIBLE FLAGS: {flags or 'none'}"
        + "\n\nCHUNK:\n"
        + (prose or "")[:max_prose_chars]
    )
    return [SystemMessage(content=EXTRACTION_SYSTEM_PROMPT), HumanMessage(content=human)]


class LLMChunkGenerator:
    """用 OpenAI 兼容聊天模型生成单个 chunk。任何失败都包装成 GenerationError。"""

    def __init__(self, llm: Any, *, logger: Any = None):
        self.llm = llm
        self.logger = logger

    def generate(self, prompt_context: Dict[str, Any], state: Dict[str, Any], chunk_index: int) -> Dict[str, Any]:
        messages = build_generation_messages(prompt_context)
        try:
            if self.logger:
                with self.logger.llm_call(
                    node="writer", chunk_index=chunk_index, messages=messages, model=_model_name(self.llm)
                ):
                    resp = self.llm.invoke(messages)
            else:
                resp = self.llm.invoke(messages)
        except Exception as e:
            raise GenerationError(f"chunk {chunk_index} generation failed: {e}") from e

        prose = _response_text(resp).strip()
        finish_reason, usage = extract_finish_reason_and_usage(resp)
        if self.logger:
            self.logger.event(
                "llm_response",
                node="writer",
                chunk_index=chunk_index,
                finish_reason=finish_reason,
                token_usage=usage,
                text=prose,
            )
        return {"prose": prose, "word_count": count_words(prose), "finish_reason": finish_reason, "usage": usage}


class LLMDeltaExtractor:
    """
    用低温度模型把 chunk 正文抽取为固定格式的 delta 文本。
    只调用一次：超时与失败都交给上层降级为空 delta。
    """

    def __init__(self, llm: Any, *, logger: Any = None):
        self.llm = llm
        self.logger = logger

    def extract(self, prose: str, state: Dict[str, Any]) -> str:
        messages = build_extraction_messages(prose, state)
        try:
            if self.logger:
                with self.logger.llm_call(node="extractor", chunk_index=None, messages=messages, model=_model_name(self.llm)):
                    resp = self.llm.invoke(messages)
            else:
                resp = self.llm.invoke(messages)
        except Exception as e:
            raise ExtractionError(f"delta extraction failed: {e}") from e
        return _response_text(resp)


class TemplateChunkGenerator:
    """
    无 LLM 时的确定性生成（用于验证闭环/离线跑通流程）。
    按上下文里的 target_words 生成对应词数。
    """

    def generate(self, prompt_context: Dict[str, Any], state: Dict[str, Any], chunk_index: int) -> Dict[str, Any]:
        target = max(1, int(prompt_context.get("target_words", 100) or 100))
        params = prompt_context.get("user_params") or {}
        location = (state.get("world_facts") or {}).get("location") or params.get("location") or "the place"
        opening = f"Chunk {chunk_index} at {location}."
        filler = ["the", "night", "kept", "its", "rules", "and", "the", "narrator", "kept", "walking"]
        words = opening.split()
        i = 0
        while len(words) < target:
            words.append(filler[i % len(filler)])
            i += 1
        prose = " ".join(words[:target])
        return {"prose": prose, "word_count": count_words(prose), "finish_reason": "template", "usage": {}}


class TemplateDeltaExtractor:
    """模板模式：不抽取任何变化（所有段均为 None）。"""

    def extract(self, prose: str, state: Dict[str, Any]) -> str:
        return format_delta(StateDelta.empty(0))

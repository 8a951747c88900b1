from __future__ import annotations

from typing import Any, Dict, List

from debug_log import tail_text


CONTINUATION_INSTRUCTIONS = "Continue the story naturally from where the previous chunk left off."
FINAL_CHUNK_INSTRUCTIONS = "Bring the story to a satisfying conclusion in this chunk."


def chunk_target_words(*, target_words: int, cumulative_word_count: int, chunk_words: int) -> int:
    remaining = max(0, int(target_words) - int(cumulative_word_count))
    return max(1, min(int(chunk_words), remaining)) if remaining else int(chunk_words)


def build_prompt_context(
    *,
    user_params: Dict[str, Any],
    state_snapshot: Dict[str, Any],
    chunk_index: int,
    cumulative_word_count: int,
    target_words: int,
    chunk_words: int,
    previous_prose: str = "",
    context_chars: int = 2000,
    timeline_recent_k: int = 8,
) -> Dict[str, Any]:
    """
    组装单个 chunk 的生成上下文（有界）：
    - 上一段正文只保留末尾 context_chars 个字符
    - 时间线只保留最近 timeline_recent_k 条
    - 只带已建立（active）的规则
    """
    remaining = max(0, int(target_words) - int(cumulative_word_count))
    per_chunk = chunk_target_words(
        target_words=target_words, cumulative_word_count=cumulative_word_count, chunk_words=chunk_words
    )
    is_first = int(chunk_index) == 1
    is_final = remaining <= int(chunk_words)

    rules = [
        {"rule_id": r.get("rule_id"), "text": r.get("text"), "kind": r.get("kind"), "violated": bool(r.get("violated"))}
        for r in (state_snapshot.get("rules") or [])
        if r.get("active") and str(r.get("text") or "").strip()
    ]
    timeline: List[str] = list(state_snapshot.get("timeline_commitments") or [])
    recent = timeline[-timeline_recent_k:] if timeline_recent_k > 0 else []

    return {
        "user_params": dict(user_params or {}),
        "chunk_index": int(chunk_index),
        "is_first_chunk": is_first,
        "is_final_chunk": is_final,
        "target_words": per_chunk,
        "total_target_words": int(target_words),
        "cumulative_word_count": int(cumulative_word_count),
        "previous_prose": "" if is_first else tail_text(previous_prose, context_chars),
        "continuation_instructions": None if is_first else CONTINUATION_INSTRUCTIONS,
        "final_chunk_instructions": FINAL_CHUNK_INSTRUCTIONS if is_final else None,
        "active_rules": rules,
        "entity_capabilities": dict(state_snapshot.get("entity_capabilities") or {}),
        "irreversible_flags": dict(state_snapshot.get("irreversible_flags") or {}),
        "world_facts": dict(state_snapshot.get("world_facts") or {}),
        "recent_timeline": recent,
        "timeline_total": len(timeline),
    }


def render_state_digest(context: Dict[str, Any]) -> str:
    """把上下文里的状态部分渲染成提示词文本块。"""
    lines: List[str] = []
    rules = context.get("active_rules") or []
    lines.append("ESTABLISHED RULES:")
    if rules:
        for r in rules:
            mark = " (VIOLATED)" if r.get("violated") else ""
            lines.append(f"- {r.get('rule_id')}: {r.get('text')}{mark}")
    else:
        lines.append("- none established yet")

    def _kv_block(title: str, data: Dict[str, Any]) -> None:
        lines.append(f"{title}:")
        items = [(k, v) for k, v in data.items() if v is not None]
        if not items:
            lines.append("- none")
        for k, v in items:
            lines.append(f"- {k}: {v}")

    _kv_block("ENTITY CAPABILITIES", context.get("entity_capabilities") or {})
    _kv_block("IRREVERSIBLE FLAGS", context.get("irreversible_flags") or {})
    _kv_block("WORLD FACTS", context.get("world_facts") or {})

    lines.append("TIMELINE (most recent):")
    recent = context.get("recent_timeline") or []
    if recent:
        lines.extend(f"- {t}" for t in recent)
    else:
        lines.append("- none")
    return "\n".join(lines)

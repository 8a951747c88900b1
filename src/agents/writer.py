from __future__ import annotations

from typing import Any, Dict

from context import build_prompt_context
from errors import CheckpointStorageError, GenerationError
from generators import count_words
from llm_call import CallTimeoutError, call_with_retry, call_with_timeout
from state import ChunkRunState


def _generate_once(generator: Any, prompt_context: Dict[str, Any], snapshot: Dict[str, Any], chunk_index: int, timeout_s: float) -> Dict[str, Any]:
    try:
        result = call_with_timeout(lambda: generator.generate(prompt_context, snapshot, chunk_index), timeout_s)
    except CallTimeoutError as e:
        raise GenerationError(f"chunk {chunk_index} generation timed out: {e}") from e
    except GenerationError:
        raise
    except Exception as e:  # noqa: BLE001
        raise GenerationError(f"chunk {chunk_index} generation failed: {e.__class__.__name__}: {e}") from e
    if not isinstance(result, dict):
        raise GenerationError(f"chunk {chunk_index} generator returned {type(result).__name__}, expected dict")
    prose = str(result.get("prose", "") or "")
    if not prose.strip():
        raise GenerationError(f"chunk {chunk_index} generator returned empty prose")
    word_count = result.get("word_count")
    if isinstance(word_count, bool) or not isinstance(word_count, int) or word_count < 0:
        word_count = count_words(prose)
    return {"prose": prose, "word_count": word_count}


def writer_agent(state: ChunkRunState) -> ChunkRunState:
    """
    写手节点（每个 chunk 的第一步）：
    - 先检查取消（只在 chunk 之间生效）
    - 组装有界上下文，调用生成能力（超时 + 指数退避重试）
    - 重试耗尽：会话失败，已写的检查点保持不动
    - 正文立即原子落盘，抽取失败也不会丢
    """
    logger = state.get("logger")
    settings = state["settings"]
    chunk_index = int(state.get("last_chunk_index", 0) or 0) + 1
    state["chunk_index"] = chunk_index
    state["chunk_warnings"] = []
    if logger:
        logger.event("node_start", node="writer", session_id=state.get("session_id"), chunk_index=chunk_index)

    cancel_event = state.get("cancel_event")
    if cancel_event is not None and cancel_event.is_set():
        state["status"] = "cancelled"
        state["error"] = "cancelled"
        state["stop_reason"] = "cancelled"
        if logger:
            logger.event("node_end", node="writer", chunk_index=chunk_index, status="cancelled")
        return state

    store = state["store"]
    snapshot = store.snapshot()
    chunk_texts = state.get("chunk_texts") or []
    prompt_context = build_prompt_context(
        user_params=state.get("user_params") or {},
        state_snapshot=snapshot,
        chunk_index=chunk_index,
        cumulative_word_count=int(state.get("cumulative_word_count", 0) or 0),
        target_words=int(state.get("target_words", settings.target_words)),
        chunk_words=int(settings.chunk_words),
        previous_prose=chunk_texts[-1] if chunk_texts else "",
        context_chars=int(settings.context_chars),
        timeline_recent_k=int(settings.timeline_recent_k),
    )

    generator = state["generator"]
    try:
        result = call_with_retry(
            lambda: _generate_once(generator, prompt_context, snapshot, chunk_index, settings.generate_timeout_s),
            max_attempts=settings.max_generation_attempts,
            base_sleep_s=settings.retry_base_sleep_s,
            max_sleep_s=settings.retry_max_sleep_s,
            retry_on=(GenerationError,),
            logger=logger,
            node="writer",
            chunk_index=chunk_index,
        )
    except GenerationError as e:
        state["status"] = "failed"
        state["error"] = f"GenerationError: {e}"
        state["stop_reason"] = "generation_failed"
        if logger:
            logger.event("node_end", node="writer", chunk_index=chunk_index, status="failed", error=str(e))
        return state

    try:
        state["checkpoint_writer"].write_chunk_text(state["session_id"], chunk_index, result["prose"])
    except CheckpointStorageError as e:
        state["status"] = "failed"
        state["error"] = f"CheckpointStorageError: {e}"
        state["stop_reason"] = "storage_failed"
        if logger:
            logger.event("node_end", node="writer", chunk_index=chunk_index, status="failed", error=str(e))
        return state

    state["chunk_prose"] = result["prose"]
    state["chunk_word_count"] = int(result["word_count"])
    if logger:
        logger.event(
            "node_end",
            node="writer",
            chunk_index=chunk_index,
            chunk_word_count=state["chunk_word_count"],
            target_words=prompt_context["target_words"],
        )
    return state

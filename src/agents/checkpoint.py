from __future__ import annotations

from typing import Any, Dict, List

from checkpoints import Checkpoint
from errors import CheckpointStorageError
from state import ChunkRunState


def _manifest(state: ChunkRunState, checkpoints: List[Checkpoint]) -> Dict[str, Any]:
    store = state["store"]
    writer = state["checkpoint_writer"]
    session_id = state["session_id"]
    return {
        "session_id": session_id,
        "target_words": int(state.get("target_words", 0) or 0),
        "cumulative_word_count": int(state.get("cumulative_word_count", 0) or 0),
        "chunks": [
            {
                "chunk_index": cp.chunk_index,
                "word_count": cp.chunk_word_count,
                "text_path": writer.chunk_text_path(session_id, cp.chunk_index),
                "checkpoint_path": writer.checkpoint_path(session_id, cp.chunk_index),
                "saved_at": cp.timestamp,
            }
            for cp in checkpoints
        ],
        "active_rules": len(store.active_rules()),
        "violated_rules": len(store.violated_rules()),
    }


def _clear_chunk_fields(state: ChunkRunState) -> None:
    # 图状态按键合并更新：用空值覆盖而不是删除键
    state["chunk_prose"] = ""
    state["chunk_word_count"] = 0
    state["state_delta"] = None
    state["chunk_warnings"] = []
    state["applied_changes"] = []
    state["pending_failure"] = None


def checkpoint_agent(state: ChunkRunState) -> ChunkRunState:
    """
    检查点节点（每个 chunk 的最后一步）：
    - 写入不可变检查点（写失败 = 会话失败）
    - 更新 chunk_manifest.json，触发进度回调
    - 决定是否继续：达到目标字数 / chunk 上限 / 严格模式违规
    """
    logger = state.get("logger")
    settings = state["settings"]
    session_id = state["session_id"]
    chunk_index = int(state["chunk_index"])
    if logger:
        logger.event("node_start", node="checkpoint", session_id=session_id, chunk_index=chunk_index)

    chunk_word_count = int(state.get("chunk_word_count", 0) or 0)
    cumulative = int(state.get("cumulative_word_count", 0) or 0) + chunk_word_count
    chunk_warnings = list(state.get("chunk_warnings") or [])
    delta = state["state_delta"]

    cp = Checkpoint(
        session_id=session_id,
        chunk_index=chunk_index,
        chunk_word_count=chunk_word_count,
        cumulative_word_count=cumulative,
        state_delta=delta.to_dict(),
        state_snapshot=state["store"].snapshot(),
        warnings=chunk_warnings,
    )
    writer = state["checkpoint_writer"]
    try:
        writer.write(cp)
    except CheckpointStorageError as e:
        state["status"] = "failed"
        state["error"] = f"CheckpointStorageError: {e}"
        state["stop_reason"] = "storage_failed"
        if logger:
            logger.event("node_end", node="checkpoint", chunk_index=chunk_index, status="failed", error=str(e))
        return state

    checkpoints = list(state.get("checkpoints") or []) + [cp]
    state["checkpoints"] = checkpoints
    state["chunk_texts"] = list(state.get("chunk_texts") or []) + [str(state.get("chunk_prose", "") or "")]
    state["cumulative_word_count"] = cumulative
    state["last_chunk_index"] = chunk_index
    warnings = list(state.get("warnings") or [])
    warnings.extend(f"chunk {chunk_index}: {w}" for w in chunk_warnings)

    try:
        writer.write_manifest(session_id, _manifest(state, checkpoints))
    except CheckpointStorageError as e:
        warnings.append(f"chunk {chunk_index}: manifest not updated: {e}")

    on_checkpoint = state.get("on_checkpoint")
    if on_checkpoint is not None:
        on_checkpoint(cp)

    target = int(state.get("target_words", settings.target_words))
    pending_failure = state.get("pending_failure")
    if pending_failure:
        state["status"] = "failed"
        state["error"] = str(pending_failure)
        state["stop_reason"] = "monotonicity_violation"
    elif cumulative >= target:
        state["status"] = "complete"
        state["stop_reason"] = "target_reached"
    elif chunk_index >= int(settings.max_chunks):
        state["status"] = "complete"
        state["stop_reason"] = "max_chunks"
        warnings.append(f"chunk ceiling reached ({settings.max_chunks}) at {cumulative}/{target} words")
    else:
        state["status"] = "running"
    state["warnings"] = warnings

    if logger:
        logger.event(
            "node_end",
            node="checkpoint",
            chunk_index=chunk_index,
            chunk_word_count=chunk_word_count,
            cumulative_word_count=cumulative,
            status=state["status"],
        )
    _clear_chunk_fields(state)
    return state

from __future__ import annotations

from delta_parser import StateDelta, parse_delta
from errors import ExtractionError
from llm_call import CallTimeoutError, call_with_timeout
from state import ChunkRunState


def extractor_agent(state: ChunkRunState) -> ChunkRunState:
    """
    抽取节点：正文 -> delta 文本 -> StateDelta。
    抽取失败/超时/格式错误都不阻塞：降级为空 delta，并把原因记入本 chunk 警告。
    """
    logger = state.get("logger")
    settings = state["settings"]
    chunk_index = int(state["chunk_index"])
    if logger:
        logger.event("node_start", node="extractor", session_id=state.get("session_id"), chunk_index=chunk_index)

    prose = str(state.get("chunk_prose", "") or "")
    snapshot = state["store"].snapshot()
    extractor = state["extractor"]

    try:
        delta_text = call_with_timeout(lambda: extractor.extract(prose, snapshot), settings.extract_timeout_s)
        delta = parse_delta(delta_text, chunk_index)
    except CallTimeoutError as e:
        delta = StateDelta.empty(chunk_index, warning=f"extraction timed out: {e}")
    except ExtractionError as e:
        delta = StateDelta.empty(chunk_index, warning=f"extraction failed ({e.__class__.__name__}): {e}")
    except Exception as e:  # noqa: BLE001
        delta = StateDelta.empty(chunk_index, warning=f"extraction failed ({e.__class__.__name__}): {e}")
        if logger:
            logger.event("extraction_error", chunk_index=chunk_index, error_type=e.__class__.__name__, error=str(e))

    state["state_delta"] = delta
    state["chunk_warnings"] = list(state.get("chunk_warnings") or []) + list(delta.warnings)
    if logger:
        logger.event(
            "node_end",
            node="extractor",
            chunk_index=chunk_index,
            empty_delta=delta.is_empty(),
            warnings_count=len(delta.warnings),
        )
    return state

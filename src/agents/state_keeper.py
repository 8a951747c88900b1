from __future__ import annotations

from delta_apply import apply_delta
from state import ChunkRunState


def state_keeper_agent(state: ChunkRunState) -> ChunkRunState:
    logger = state.get("logger")
    chunk_index = int(state["chunk_index"])
    if logger:
        logger.event("node_start", node="state_keeper", session_id=state.get("session_id"), chunk_index=chunk_index)

    result = apply_delta(state["store"], state["state_delta"], logger=logger)
    state["applied_changes"] = list(result.changes_applied)
    state["chunk_warnings"] = list(state.get("chunk_warnings") or []) + list(result.warnings)

    # 严格模式：先照常写本 chunk 的检查点，再终止会话
    if result.policy_violations and state["settings"].monotonicity_policy == "fail":
        state["pending_failure"] = f"MonotonicityViolationError: {result.policy_violations[0]}"

    if logger:
        logger.event(
            "node_end",
            node="state_keeper",
            chunk_index=chunk_index,
            changes_count=len(result.changes_applied),
            warnings_count=len(result.warnings),
        )
    return state

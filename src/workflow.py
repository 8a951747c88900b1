from __future__ import annotations

from langgraph.graph import StateGraph, END

from state import ChunkRunState
from agents.writer import writer_agent
from agents.extractor import extractor_agent
from agents.state_keeper import state_keeper_agent
from agents.checkpoint import checkpoint_agent


NODES_PER_CHUNK = 4


def _next_step_after_writer(state: ChunkRunState):
    # 取消 / 生成失败：直接结束
    if str(state.get("status", "running")) != "running":
        return END
    return "extractor"


def _next_step_after_checkpoint(state: ChunkRunState):
    if str(state.get("status", "running")) == "running":
        return "writer"
    return END


def recursion_limit_for(max_chunks: int) -> int:
    return NODES_PER_CHUNK * max(1, int(max_chunks)) + 8


def build_chunk_app():
    """
    分块生成主循环：
    writer -> extractor -> state_keeper -> checkpoint -> (writer | END)

    每轮产出一个 chunk 和一个检查点；chunk 之间严格串行。
    """
    graph = StateGraph(ChunkRunState)
    graph.add_node("writer", writer_agent)
    graph.add_node("extractor", extractor_agent)
    graph.add_node("state_keeper", state_keeper_agent)
    graph.add_node("checkpoint", checkpoint_agent)

    graph.set_entry_point("writer")
    graph.add_conditional_edges("writer", _next_step_after_writer, {"extractor": "extractor", END: END})
    graph.add_edge("extractor", "state_keeper")
    graph.add_edge("state_keeper", "checkpoint")
    graph.add_conditional_edges("checkpoint", _next_step_after_checkpoint, {"writer": "writer", END: END})
    return graph.compile()

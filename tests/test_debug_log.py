"""
Run logger: JSONL events, index file, payload spill for llm_* events and
the per-chunk call graph.
"""

import os

import pytest

from debug_log import RunLogger, build_call_graph_mermaid_by_chunk, load_events


@pytest.fixture
def logger(tmp_path):
    return RunLogger(
        path=str(tmp_path / "logs" / "run.jsonl"),
        index_path=str(tmp_path / "logs" / "run.index.jsonl"),
        preview_chars=20,
    )


class TestRunLogger:

    def test_events_and_index(self, logger):
        logger.event("node_start", node="writer", session_id="s1", chunk_index=1, extra_field="x")
        events = load_events(logger.path)
        index = load_events(logger.index_path)
        assert events[0]["event"] == "node_start"
        assert events[0]["extra_field"] == "x"
        assert index[0]["chunk_index"] == 1
        assert "extra_field" not in index[0]

    def test_llm_text_spills_to_payload_file(self, logger):
        long_text = "word " * 100
        logger.event("llm_response", node="writer", chunk_index=2, text=long_text)
        ev = load_events(logger.path)[0]
        assert len(ev["text"]) < len(long_text)
        payload = os.path.join(os.path.dirname(logger.path), ev["text__full_path"])
        with open(payload, encoding="utf-8") as f:
            assert f.read() == long_text

    def test_non_llm_events_are_not_compacted(self, logger):
        long_text = "word " * 100
        logger.event("node_end", text=long_text)
        assert load_events(logger.path)[0]["text"] == long_text

    def test_span_records_errors_and_reraises(self, logger):
        with pytest.raises(ValueError):
            with logger.span("resume", session_id="s1"):
                raise ValueError("bad checkpoint")
        names = [e["event"] for e in load_events(logger.path)]
        assert names == ["span_start", "span_error"]

    def test_disabled_logger_writes_nothing(self, tmp_path):
        quiet = RunLogger(path=str(tmp_path / "quiet.jsonl"), enabled=False)
        quiet.event("node_start", node="writer")
        assert not os.path.exists(quiet.path)


class TestCallGraph:

    def test_mermaid_groups_nodes_by_chunk(self):
        events = [
            {"event": "node_start", "node": n, "chunk_index": idx}
            for idx in (1, 2)
            for n in ("writer", "extractor", "state_keeper", "checkpoint")
        ]
        graph = build_call_graph_mermaid_by_chunk(events)
        assert graph.startswith("flowchart TD")
        assert "subgraph C1[chunk 1]" in graph
        assert "C2_writer[writer] --> C2_extractor[extractor]" in graph
        assert "C1_END --> C2_START" in graph

    def test_empty_event_list(self):
        assert "START --> END" in build_call_graph_mermaid_by_chunk([])

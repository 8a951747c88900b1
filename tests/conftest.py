"""
Shared fixtures for the chunked generation tests.

The two external capabilities (generate / extract) are replaced by scripted
fakes so every scenario is deterministic and offline.
"""

import threading
from typing import Any, Dict, List, Optional

import pytest

from checkpoints import FileCheckpointWriter
from orchestrator import ChunkOrchestrator
from settings import GenerationSettings


NONE_DELTA = (
    "RULE_VIOLATIONS:\nNone\n"
    "ENTITY_CAPABILITIES:\nNone\n"
    "IRREVERSIBLE_FLAGS:\nNone\n"
    "WORLD_FACTS:\nNone\n"
    "TIMELINE_COMMITMENTS:\nNone\n"
)


def words(n: int, token: str = "word") -> str:
    return " ".join([token] * n)


class ScriptedGenerator:
    """
    Each call pops the next scripted outcome for that chunk index:
    an int (word count), a dict (returned as-is) or an exception (raised).
    Chunks without a script produce `default_words` words.
    """

    def __init__(self, script: Optional[Dict[int, List[Any]]] = None, default_words: int = 100):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default_words = default_words
        self.calls: List[Dict[str, Any]] = []

    def generate(self, prompt_context, state, chunk_index):
        self.calls.append({"chunk_index": chunk_index, "prompt_context": prompt_context, "state": state})
        queue = self.script.get(chunk_index)
        outcome: Any = queue.pop(0) if queue else self.default_words
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, dict):
            return outcome
        prose = f"chunk{chunk_index} " + words(outcome - 1)
        return {"prose": prose, "word_count": outcome}


class ScriptedExtractor:
    """Returns scripted delta text per call order; exceptions are raised."""

    def __init__(self, outputs: Optional[List[Any]] = None):
        self.outputs = list(outputs or [])
        self.calls: List[Dict[str, Any]] = []

    def extract(self, prose, state):
        self.calls.append({"prose": prose, "state": state})
        outcome = self.outputs.pop(0) if self.outputs else NONE_DELTA
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class BlockingGenerator(ScriptedGenerator):
    """Blocks every generate() call until `release` is set."""

    def __init__(self, default_words: int = 100):
        super().__init__(default_words=default_words)
        self.release = threading.Event()
        self.entered = threading.Event()

    def generate(self, prompt_context, state, chunk_index):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().generate(prompt_context, state, chunk_index)


@pytest.fixture
def gen_settings():
    return GenerationSettings(
        target_words=300,
        chunk_words=100,
        max_chunks=10,
        rule_count=3,
        max_generation_attempts=3,
        retry_base_sleep_s=0.0,
        retry_max_sleep_s=0.0,
        generate_timeout_s=5.0,
        extract_timeout_s=5.0,
    )


@pytest.fixture
def checkpoint_writer(tmp_path):
    return FileCheckpointWriter(str(tmp_path / "out"))


@pytest.fixture
def make_orchestrator(checkpoint_writer, gen_settings):
    def _make(generator=None, extractor=None, settings=None):
        return ChunkOrchestrator(
            generator=generator or ScriptedGenerator(),
            extractor=extractor or ScriptedExtractor(),
            checkpoint_writer=checkpoint_writer,
            settings=settings or gen_settings,
        )

    return _make


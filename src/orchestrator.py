from __future__ import annotations

import copy
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from canon_state import CanonStateStore
from checkpoints import Checkpoint, FileCheckpointWriter
from errors import CheckpointStorageError
from settings import GenerationSettings
from state import ChunkRunState
from storage import atomic_write_text, new_session_id, read_json, write_json
from workflow import build_chunk_app, recursion_limit_for


CHUNK_SEPARATOR = "\n\n---\n\n"
TERMINAL_STATUSES = ("complete", "failed", "cancelled")


@dataclass
class RunResult:
    session_id: str
    status: str
    text: str = ""
    chunks: List[str] = field(default_factory=list)
    checkpoints: List[Checkpoint] = field(default_factory=list)
    final_state: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    stop_reason: str = ""
    cumulative_word_count: int = 0
    last_chunk_index: int = 0

    def to_dict(self, *, include_text: bool = False) -> Dict[str, Any]:
        out = {
            "session_id": self.session_id,
            "status": self.status,
            "error": self.error,
            "stop_reason": self.stop_reason,
            "cumulative_word_count": self.cumulative_word_count,
            "last_chunk_index": self.last_chunk_index,
            "chunks_completed": len(self.checkpoints),
            "warnings": list(self.warnings),
        }
        if include_text:
            out["text"] = self.text
        return out


def assemble_text(chunks: List[str]) -> str:
    return CHUNK_SEPARATOR.join(c.strip() for c in chunks)


def _resolve_target_words(user_params: Dict[str, Any], settings: GenerationSettings) -> int:
    raw = user_params.get("target_words", user_params.get("wordCount"))
    if raw is None:
        return int(settings.target_words)
    try:
        return max(1, int(raw))
    except (TypeError, ValueError):
        return int(settings.target_words)


class ChunkOrchestrator:
    """
    检查点协调器：驱动“生成 -> 抽取 -> 应用 -> 检查点”循环直到终止。

    说明：
    - 每次 run/resume 拥有自己的 CanonStateStore，会话之间互不共享
    - 终止时：complete 写 full_story.md；failed/cancelled 写 error_report.json（部分产出）
    """

    def __init__(
        self,
        *,
        generator: Any,
        extractor: Any,
        checkpoint_writer: FileCheckpointWriter,
        settings: Optional[GenerationSettings] = None,
        logger: Any = None,
    ):
        self.generator = generator
        self.extractor = extractor
        self.checkpoint_writer = checkpoint_writer
        self.settings = settings or GenerationSettings()
        self.logger = logger
        self._app = build_chunk_app()

    def session_dir(self, session_id: str) -> str:
        return self.checkpoint_writer.session_dir(session_id)

    def run(
        self,
        user_params: Dict[str, Any],
        *,
        session_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        on_checkpoint: Optional[Callable[[Checkpoint], None]] = None,
    ) -> RunResult:
        params = copy.deepcopy(user_params or {})
        params.setdefault("rule_count", params.get("ruleCount", self.settings.rule_count))
        session_id = session_id or new_session_id()
        if self.checkpoint_writer.list(session_id):
            raise CheckpointStorageError(f"session {session_id} already has checkpoints; use resume()")

        store = CanonStateStore()
        store.initialize(session_id, params)
        target_words = _resolve_target_words(params, self.settings)
        write_json(
            os.path.join(self.session_dir(session_id), "session_meta.json"),
            {
                "session_id": session_id,
                "user_params": params,
                "target_words": target_words,
                "chunk_words": self.settings.chunk_words,
                "max_chunks": self.settings.max_chunks,
                "created_at": datetime.now().isoformat(timespec="seconds"),
            },
        )
        if self.logger:
            self.logger.event(
                "session_start",
                session_id=session_id,
                target_words=target_words,
                chunk_words=self.settings.chunk_words,
                max_chunks=self.settings.max_chunks,
            )

        initial: ChunkRunState = self._initial_state(
            session_id=session_id,
            user_params=params,
            target_words=target_words,
            store=store,
            cancel_event=cancel_event,
            on_checkpoint=on_checkpoint,
        )
        return self._drive(initial)

    def resume(
        self,
        session_id: str,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_checkpoint: Optional[Callable[[Checkpoint], None]] = None,
    ) -> RunResult:
        """
        从最近一个检查点恢复：状态取自检查点快照，正文取自已落盘的 chunk 文件，
        从 chunk_index + 1 继续。没有检查点时按 session_meta.json 重新开始。
        """
        latest = self.checkpoint_writer.load_latest(session_id)
        if latest is None:
            meta = read_json(os.path.join(self.session_dir(session_id), "session_meta.json"))
            if meta is None:
                raise CheckpointStorageError(f"session {session_id} has no checkpoints and no session_meta.json")
            # 目录里可能有未完成的 chunk 正文，重新开始会覆盖
            return self.run(
                dict(meta.get("user_params") or {}),
                session_id=session_id,
                cancel_event=cancel_event,
                on_checkpoint=on_checkpoint,
            )

        latest.ensure_compatible()
        checkpoints = self.checkpoint_writer.list(session_id)
        expected = list(range(1, latest.chunk_index + 1))
        if [cp.chunk_index for cp in checkpoints] != expected:
            raise CheckpointStorageError(f"session {session_id} checkpoints are not contiguous 1..{latest.chunk_index}")

        store = CanonStateStore.from_snapshot(latest.state_snapshot)
        params = copy.deepcopy(latest.state_snapshot.get("user_params") or {})
        chunk_texts = [self.checkpoint_writer.load_chunk_text(session_id, cp.chunk_index) for cp in checkpoints]
        target_words = _resolve_target_words(params, self.settings)
        if self.logger:
            self.logger.event(
                "session_resume",
                session_id=session_id,
                chunk_index=latest.chunk_index,
                cumulative_word_count=latest.cumulative_word_count,
            )

        initial = self._initial_state(
            session_id=session_id,
            user_params=params,
            target_words=target_words,
            store=store,
            cancel_event=cancel_event,
            on_checkpoint=on_checkpoint,
        )
        initial["last_chunk_index"] = latest.chunk_index
        initial["cumulative_word_count"] = latest.cumulative_word_count
        initial["checkpoints"] = checkpoints
        initial["chunk_texts"] = chunk_texts

        if latest.cumulative_word_count >= target_words or latest.chunk_index >= self.settings.max_chunks:
            initial["status"] = "complete"
            initial["stop_reason"] = "already_complete"
            return self._finish(initial)
        return self._drive(initial)

    def _initial_state(
        self,
        *,
        session_id: str,
        user_params: Dict[str, Any],
        target_words: int,
        store: CanonStateStore,
        cancel_event: Optional[threading.Event],
        on_checkpoint: Optional[Callable[[Checkpoint], None]],
    ) -> ChunkRunState:
        return {
            "session_id": session_id,
            "user_params": user_params,
            "settings": self.settings,
            "target_words": target_words,
            "store": store,
            "generator": self.generator,
            "extractor": self.extractor,
            "checkpoint_writer": self.checkpoint_writer,
            "logger": self.logger,
            "cancel_event": cancel_event,
            "on_checkpoint": on_checkpoint,
            "last_chunk_index": 0,
            "cumulative_word_count": 0,
            "chunk_texts": [],
            "checkpoints": [],
            "warnings": [],
            "status": "running",
            "error": "",
            "stop_reason": "",
            "pending_failure": None,
        }

    def _drive(self, initial: ChunkRunState) -> RunResult:
        session_id = initial["session_id"]
        try:
            final: ChunkRunState = self._app.invoke(
                initial, config={"recursion_limit": recursion_limit_for(self.settings.max_chunks)}
            )
        except Exception as e:  # noqa: BLE001
            # 未预期异常：已落盘的检查点仍然有效，按磁盘内容重建部分结果
            if self.logger:
                self.logger.event("session_error", session_id=session_id, error_type=e.__class__.__name__, error=str(e))
            final = self._recover_from_disk(initial)
            final["status"] = "failed"
            final["error"] = f"{e.__class__.__name__}: {e}"
            final["stop_reason"] = "unexpected_error"
        return self._finish(final)

    def _recover_from_disk(self, initial: ChunkRunState) -> ChunkRunState:
        session_id = initial["session_id"]
        state: ChunkRunState = dict(initial)  # type: ignore[assignment]
        checkpoints = self.checkpoint_writer.list(session_id)
        texts: List[str] = []
        for cp in checkpoints:
            try:
                texts.append(self.checkpoint_writer.load_chunk_text(session_id, cp.chunk_index))
            except CheckpointStorageError:
                texts.append("")
        state["checkpoints"] = checkpoints
        state["chunk_texts"] = texts
        state["last_chunk_index"] = checkpoints[-1].chunk_index if checkpoints else 0
        state["cumulative_word_count"] = checkpoints[-1].cumulative_word_count if checkpoints else 0
        return state

    def _finish(self, final: ChunkRunState) -> RunResult:
        session_id = final["session_id"]
        status = str(final.get("status", "failed"))
        if status not in TERMINAL_STATUSES:
            status = "failed"
        checkpoints: List[Checkpoint] = list(final.get("checkpoints") or [])
        chunk_texts: List[str] = list(final.get("chunk_texts") or [])
        store = final.get("store")
        # 非完成态以最近检查点为准（内存状态可能领先于磁盘）
        final_state: Dict[str, Any] = {}
        if checkpoints and status != "complete":
            final_state = copy.deepcopy(checkpoints[-1].state_snapshot)
        elif store is not None and store.initialized:
            final_state = store.snapshot()

        result = RunResult(
            session_id=session_id,
            status=status,
            text=assemble_text(chunk_texts),
            chunks=chunk_texts,
            checkpoints=checkpoints,
            final_state=final_state,
            warnings=list(final.get("warnings") or []),
            error=(str(final.get("error") or "") or None) if status != "complete" else None,
            stop_reason=str(final.get("stop_reason") or ""),
            cumulative_word_count=int(final.get("cumulative_word_count", 0) or 0),
            last_chunk_index=int(final.get("last_chunk_index", 0) or 0),
        )
        self._write_outputs(result)
        if self.logger:
            self.logger.event(
                "session_end",
                session_id=session_id,
                status=result.status,
                stop_reason=result.stop_reason,
                cumulative_word_count=result.cumulative_word_count,
                chunk_index=result.last_chunk_index,
                warnings_count=len(result.warnings),
            )
        return result

    def _write_outputs(self, result: RunResult) -> None:
        session_dir = self.session_dir(result.session_id)
        if result.chunks:
            atomic_write_text(os.path.join(session_dir, "full_story.md"), result.text + "\n")
        write_json(os.path.join(session_dir, "run_result.json"), result.to_dict())
        if result.status != "complete":
            write_json(
                os.path.join(session_dir, "error_report.json"),
                {
                    "session_id": result.session_id,
                    "status": result.status,
                    "error": result.error,
                    "stop_reason": result.stop_reason,
                    "chunks_completed": len(result.checkpoints),
                    "partial_word_count": result.cumulative_word_count,
                    "last_chunk_index": result.last_chunk_index,
                    "warnings": result.warnings,
                    "timestamp": datetime.now().isoformat(timespec="seconds"),
                },
            )

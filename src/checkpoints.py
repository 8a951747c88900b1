from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from errors import CheckpointStorageError, IncompatibleCheckpointError
from storage import atomic_write_json, atomic_write_text, get_session_dir, list_session_ids, read_json


CHECKPOINT_PROTOCOL_VERSION = "3.0.0"

_CHECKPOINT_FILE_RE = re.compile(r"^checkpoint_(\d+)\.json$")


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def protocol_major(version: str) -> int:
    try:
        return int(str(version or "0").split(".", 1)[0])
    except ValueError:
        return -1


@dataclass(frozen=True)
class Checkpoint:
    """
    单个 chunk 的持久化记录（写入后不可变）。
    state_snapshot 为写入时规范状态的完整深拷贝。
    """

    session_id: str
    chunk_index: int
    chunk_word_count: int
    cumulative_word_count: int
    state_delta: Dict[str, Any] = field(default_factory=dict)
    state_snapshot: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_now_iso)
    protocol_version: str = CHECKPOINT_PROTOCOL_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol_version": self.protocol_version,
            "session_id": self.session_id,
            "chunk_index": self.chunk_index,
            "chunk_word_count": self.chunk_word_count,
            "cumulative_word_count": self.cumulative_word_count,
            "state_delta": copy.deepcopy(self.state_delta),
            "state_snapshot": copy.deepcopy(self.state_snapshot),
            "warnings": list(self.warnings),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Checkpoint":
        return cls(
            session_id=str(d.get("session_id", "")),
            chunk_index=int(d["chunk_index"]),
            chunk_word_count=int(d.get("chunk_word_count", 0) or 0),
            cumulative_word_count=int(d.get("cumulative_word_count", 0) or 0),
            state_delta=copy.deepcopy(d.get("state_delta") or {}),
            state_snapshot=copy.deepcopy(d.get("state_snapshot") or {}),
            warnings=[str(x) for x in (d.get("warnings") or [])],
            timestamp=str(d.get("timestamp") or _now_iso()),
            protocol_version=str(d.get("protocol_version") or "0.0.0"),
        )

    def ensure_compatible(self) -> None:
        if protocol_major(self.protocol_version) != protocol_major(CHECKPOINT_PROTOCOL_VERSION):
            raise IncompatibleCheckpointError(
                f"checkpoint {self.chunk_index} uses protocol {self.protocol_version}, "
                f"expected major {protocol_major(CHECKPOINT_PROTOCOL_VERSION)}"
            )


class FileCheckpointWriter:
    """
    文件系统检查点存储：
      <base>/sessions/<session_id>/checkpoints/checkpoint_001.json
      <base>/sessions/<session_id>/chunks/chunk_001.md
      <base>/sessions/<session_id>/chunk_manifest.json
    """

    def __init__(self, base_dir: str, *, logger: Any = None):
        self.base_dir = base_dir
        self.logger = logger

    def session_dir(self, session_id: str) -> str:
        return get_session_dir(self.base_dir, session_id)

    def _checkpoints_dir(self, session_id: str) -> str:
        return os.path.join(self.session_dir(session_id), "checkpoints")

    def _chunks_dir(self, session_id: str) -> str:
        return os.path.join(self.session_dir(session_id), "chunks")

    def checkpoint_path(self, session_id: str, chunk_index: int) -> str:
        return os.path.join(self._checkpoints_dir(session_id), f"checkpoint_{int(chunk_index):03d}.json")

    def chunk_text_path(self, session_id: str, chunk_index: int) -> str:
        return os.path.join(self._chunks_dir(session_id), f"chunk_{int(chunk_index):03d}.md")

    def manifest_path(self, session_id: str) -> str:
        return os.path.join(self.session_dir(session_id), "chunk_manifest.json")

    def write(self, checkpoint: Checkpoint) -> str:
        path = self.checkpoint_path(checkpoint.session_id, checkpoint.chunk_index)
        if os.path.exists(path):
            raise CheckpointStorageError(
                f"checkpoint already exists for session={checkpoint.session_id} chunk={checkpoint.chunk_index}"
            )
        try:
            atomic_write_json(path, checkpoint.to_dict())
        except OSError as e:
            raise CheckpointStorageError(f"failed to write checkpoint {path}: {e}") from e
        if self.logger:
            self.logger.event(
                "checkpoint_written",
                chunk_index=checkpoint.chunk_index,
                cumulative_word_count=checkpoint.cumulative_word_count,
                path=path,
            )
        return path

    def list(self, session_id: str) -> List[Checkpoint]:
        """按 chunk 序号升序返回；临时文件/损坏文件忽略。"""
        root = self._checkpoints_dir(session_id)
        if not os.path.isdir(root):
            return []
        indexed = []
        for name in os.listdir(root):
            m = _CHECKPOINT_FILE_RE.match(name)
            if not m:
                continue
            data = read_json(os.path.join(root, name))
            if data is None:
                if self.logger:
                    self.logger.event("checkpoint_unreadable", path=os.path.join(root, name))
                continue
            try:
                cp = Checkpoint.from_dict(data)
            except (KeyError, TypeError, ValueError):
                continue
            indexed.append((cp.chunk_index, cp))
        indexed.sort(key=lambda x: x[0])
        return [cp for _, cp in indexed]

    def load_latest(self, session_id: str) -> Optional[Checkpoint]:
        cps = self.list(session_id)
        return cps[-1] if cps else None

    def write_chunk_text(self, session_id: str, chunk_index: int, prose: str) -> str:
        path = self.chunk_text_path(session_id, chunk_index)
        try:
            atomic_write_text(path, prose)
        except OSError as e:
            raise CheckpointStorageError(f"failed to write chunk text {path}: {e}") from e
        return path

    def load_chunk_text(self, session_id: str, chunk_index: int) -> str:
        path = self.chunk_text_path(session_id, chunk_index)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            raise CheckpointStorageError(f"failed to read chunk text {path}: {e}") from e

    def write_manifest(self, session_id: str, manifest: Dict[str, Any]) -> str:
        path = self.manifest_path(session_id)
        data = {"protocol_version": CHECKPOINT_PROTOCOL_VERSION, "updated_at": _now_iso(), **manifest}
        try:
            atomic_write_json(path, data)
        except OSError as e:
            raise CheckpointStorageError(f"failed to write manifest {path}: {e}") from e
        return path

    def read_manifest(self, session_id: str) -> Dict[str, Any]:
        return read_json(self.manifest_path(session_id)) or {}

    def list_sessions(self) -> List[str]:
        return list_session_ids(self.base_dir)

from __future__ import annotations

import concurrent.futures
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from checkpoints import Checkpoint
from orchestrator import ChunkOrchestrator, RunResult
from storage import new_session_id


def _new_job_id() -> str:
    # 例如 job-2026-01-22T23-10-27-1620f69a
    iso = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
    return f"job-{iso}-{uuid.uuid4().hex[:8]}"


@dataclass
class JobRecord:
    job_id: str
    session_id: str
    user_params: Dict[str, Any]
    status: str = "running"
    cancel_event: threading.Event = field(default_factory=threading.Event)
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    cumulative_word_count: int = 0
    last_chunk_index: int = 0
    error: Optional[str] = None
    result: Optional[RunResult] = None


class SessionRegistry:
    """
    任务注册表（线程安全）：
    - 只保存计数与结果，不持有会话的实时状态
    - 结束超过 ttl_s 的任务由 expire() 移除
    - 已发放的 job_id 不会复用
    """

    def __init__(self, *, ttl_s: float = 3600.0, clock: Callable[[], float] = time.time):
        self.ttl_s = float(ttl_s)
        self._clock = clock
        self._jobs: Dict[str, JobRecord] = {}
        self._issued: Set[str] = set()
        self._lock = threading.Lock()

    def create(self, user_params: Dict[str, Any], *, session_id: Optional[str] = None) -> JobRecord:
        with self._lock:
            job_id = _new_job_id()
            while job_id in self._issued:
                job_id = _new_job_id()
            self._issued.add(job_id)
            record = JobRecord(
                job_id=job_id,
                session_id=session_id or new_session_id(),
                user_params=dict(user_params or {}),
                created_at=self._clock(),
            )
            self._jobs[job_id] = record
            return record

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            record = self._jobs.get(job_id)
        if record is None:
            raise KeyError(job_id)
        return record

    def record_progress(self, job_id: str, checkpoint: Checkpoint) -> None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return
            record.cumulative_word_count = checkpoint.cumulative_word_count
            record.last_chunk_index = checkpoint.chunk_index

    def finish(self, job_id: str, *, status: str, error: Optional[str] = None, result: Optional[RunResult] = None) -> None:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                return
            record.status = status
            record.error = error
            record.result = result
            record.finished_at = self._clock()
            if result is not None:
                record.cumulative_word_count = result.cumulative_word_count
                record.last_chunk_index = result.last_chunk_index

    def expire(self, now: Optional[float] = None) -> List[str]:
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                job_id
                for job_id, r in self._jobs.items()
                if r.finished_at is not None and now - r.finished_at >= self.ttl_s
            ]
            for job_id in expired:
                del self._jobs[job_id]
        return expired

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs.keys())


class JobRunner:
    """
    后台任务执行器：start() 立即返回 job_id，chunk 循环在线程池里跑。
    max_workers 即同时运行的会话上限，超出的任务排队（状态仍为 running）。
    """

    def __init__(
        self,
        orchestrator: ChunkOrchestrator,
        *,
        max_workers: int = 2,
        ttl_s: float = 3600.0,
        logger: Any = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self.orchestrator = orchestrator
        self.logger = logger
        self.registry = registry or SessionRegistry(ttl_s=ttl_s)
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="chunk-job")
        self._futures: Dict[str, concurrent.futures.Future] = {}

    def start(self, user_params: Dict[str, Any], *, session_id: Optional[str] = None) -> str:
        for expired in self.registry.expire():
            self._futures.pop(expired, None)
        record = self.registry.create(user_params, session_id=session_id)
        if self.logger:
            self.logger.event("job_start", job_id=record.job_id, session_id=record.session_id)
        self._futures[record.job_id] = self._pool.submit(self._run, record)
        return record.job_id

    def _run(self, record: JobRecord) -> None:
        try:
            result = self.orchestrator.run(
                record.user_params,
                session_id=record.session_id,
                cancel_event=record.cancel_event,
                on_checkpoint=lambda cp: self.registry.record_progress(record.job_id, cp),
            )
        except Exception as e:  # noqa: BLE001
            self.registry.finish(record.job_id, status="failed", error=f"{e.__class__.__name__}: {e}")
            if self.logger:
                self.logger.event("job_end", job_id=record.job_id, status="failed", error=str(e))
            return

        if result.status == "complete":
            self.registry.finish(record.job_id, status="complete", result=result)
        elif result.status == "cancelled":
            self.registry.finish(record.job_id, status="failed", error="cancelled", result=result)
        else:
            self.registry.finish(record.job_id, status="failed", error=result.error or "failed", result=result)
        if self.logger:
            self.logger.event("job_end", job_id=record.job_id, status=result.status, stop_reason=result.stop_reason)

    def status(self, job_id: str) -> Dict[str, Any]:
        record = self.registry.get(job_id)
        out: Dict[str, Any] = {
            "job_id": record.job_id,
            "session_id": record.session_id,
            "status": record.status,
            "cumulative_word_count": record.cumulative_word_count,
            "last_chunk_index": record.last_chunk_index,
        }
        if record.error:
            out["error"] = record.error
        if record.result is not None:
            out["result"] = record.result.to_dict(include_text=record.status == "complete")
        return out

    def cancel(self, job_id: str) -> bool:
        """请求取消；在下一个 chunk 开始前生效。已结束的任务返回 False。"""
        record = self.registry.get(job_id)
        if record.status != "running":
            return False
        record.cancel_event.set()
        if self.logger:
            self.logger.event("job_cancel_requested", job_id=job_id, session_id=record.session_id)
        return True

    def latest_snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        """最近一个检查点里的状态快照（不读实时状态）。"""
        record = self.registry.get(job_id)
        latest = self.orchestrator.checkpoint_writer.load_latest(record.session_id)
        return latest.state_snapshot if latest else None

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.status(job_id)

    def shutdown(self, wait: bool = True) -> None:
        if not wait:
            for job_id in self.registry.job_ids():
                record = self.registry.get(job_id)
                if record.status == "running":
                    record.cancel_event.set()
        self._pool.shutdown(wait=wait)

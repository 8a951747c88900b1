from __future__ import annotations

import json
import os
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple


def _now_iso() -> str:
    # 带毫秒，方便排查耗时
    return datetime.now().isoformat(timespec="milliseconds")


def tail_text(text: str, max_chars: int) -> str:
    """保留末尾 max_chars 个字符（续写上下文只需要结尾）。"""
    s = text or ""
    if max_chars <= 0:
        return ""
    return s if len(s) <= max_chars else s[-max_chars:]


def _preview_text(s: str, preview_chars: int) -> str:
    s = s or ""
    if len(s) <= preview_chars:
        return s
    return s[:preview_chars] + f"...(+{len(s) - preview_chars} chars)"


def _payload_hint(s: str, max_len: int = 80) -> str:
    out = "".join(ch if (ch.isalnum() or ch in ("-", "_", ".")) else "_" for ch in str(s or ""))
    out = out.strip("._") or "payload"
    return out[:max_len]


def _serialize_messages(messages: Any) -> Any:
    """
    把 LangChain message 列表转成可写入日志的结构（全量，截断交给 event 统一处理）。
    """
    if messages is None:
        return None
    if not isinstance(messages, (list, tuple)):
        return str(messages)
    return [
        {
            "role": getattr(m, "type", None) or m.__class__.__name__,
            "content": str(getattr(m, "content", "") or ""),
        }
        for m in messages
    ]


# 仅对 llm_* 事件里的正文类字段落 payload 文件
_BULKY_KEYS = (".messages", ".content", ".prompt", ".response", ".raw", ".text", ".traceback", ".prose")


@dataclass
class RunLogger:
    """
    JSONL 运行日志。

    - path: 全量事件（一行一个 JSON）
    - index_path: 轻量索引（只保留高价值字段与 payload 指针），为空则不写
    - 长正文写入 <dir>/debug_payloads/*，jsonl 中只保留 preview + 指针
    """

    path: str
    index_path: str = ""
    enabled: bool = True
    preview_chars: int = 100
    payload_dirname: str = "debug_payloads"
    _seq: int = field(default=0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _append(self, path: str, obj: Dict[str, Any]) -> None:
        if not self.enabled or not path:
            return
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        line = json.dumps(obj, ensure_ascii=False, default=str) + "\n"
        with self._lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)

    def _index_entry(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        keep_keys = (
            "ts",
            "event",
            "node",
            "name",
            "session_id",
            "chunk_index",
            "attempt",
            "duration_ms",
            "status",
            "reason",
            "error_type",
            "error",
            "chunk_word_count",
            "cumulative_word_count",
            "changes_count",
            "warnings_count",
        )
        idx = {k: obj.get(k) for k in keep_keys if k in obj}
        for k in obj.keys():
            if k.endswith("__full_path") or k.endswith("__chars"):
                idx[k] = obj.get(k)
        return idx

    def _write_payload(self, text: str, hint: str) -> Dict[str, Any]:
        base = os.path.dirname(self.path) or "."
        payload_dir = os.path.join(base, self.payload_dirname)
        with self._lock:
            self._seq += 1
            seq = self._seq
        fname = f"{datetime.now().strftime('%Y%m%d-%H%M%S.%f')[:-3]}_{seq:04d}_{_payload_hint(hint)}.txt"
        full_path = os.path.join(payload_dir, fname)
        try:
            os.makedirs(payload_dir, exist_ok=True)
            with open(full_path, "w", encoding="utf-8") as f:
                f.write(text)
        except OSError:
            # 写不了 payload 就只保留 preview
            return {"full_path": "", "chars": len(text)}
        return {"full_path": os.path.relpath(full_path, base).replace("\\", "/"), "chars": len(text)}

    def _compact(self, obj: Any, path: str, is_llm: bool) -> Any:
        pc = self.preview_chars if self.preview_chars > 0 else 100

        def _bulky(p: str) -> bool:
            return is_llm and any(k in p for k in _BULKY_KEYS)

        if isinstance(obj, dict):
            for k in list(obj.keys()):
                v = obj[k]
                p = f"{path}.{k}"
                if isinstance(v, str):
                    if len(v) > pc and _bulky(p):
                        meta = self._write_payload(v, p)
                        obj[k] = _preview_text(v, pc)
                        obj[f"{k}__full_path"] = meta["full_path"]
                        obj[f"{k}__chars"] = meta["chars"]
                elif isinstance(v, (dict, list)):
                    obj[k] = self._compact(v, p, is_llm)
            return obj

        if isinstance(obj, list):
            out = []
            for i, it in enumerate(obj):
                p = f"{path}[{i}]"
                if isinstance(it, str) and len(it) > pc and _bulky(p):
                    meta = self._write_payload(it, p)
                    out.append({"__preview": _preview_text(it, pc), "__full_path": meta["full_path"], "__chars": meta["chars"]})
                elif isinstance(it, (dict, list)):
                    out.append(self._compact(it, p, is_llm))
                else:
                    out.append(it)
            return out
        return obj

    def event(self, event: str, **data: Any) -> None:
        if not self.enabled:
            return
        obj: Dict[str, Any] = {"ts": _now_iso(), "event": event, **data}
        obj = self._compact(obj, str(event), is_llm=str(event).startswith("llm_"))
        self._append(self.path, obj)
        self._append(self.index_path, self._index_entry(obj))

    def span(self, name: str, **data: Any) -> "_Span":
        return _Span(self, name=name, data=data)

    def llm_call(
        self,
        *,
        node: str,
        chunk_index: Optional[int],
        messages: Any,
        model: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> "_LLMCall":
        return _LLMCall(self, node=node, chunk_index=chunk_index, messages=messages, model=model, extra=extra or {})


def _error_fields(exc_type: Any, exc: BaseException, tb: Any) -> Dict[str, Any]:
    return {
        "error_type": getattr(exc_type, "__name__", str(exc_type)),
        "error": str(exc),
        "traceback": "".join(traceback.format_exception(exc_type, exc, tb)),
    }


class _Span:
    def __init__(self, logger: RunLogger, name: str, data: Dict[str, Any]):
        self.logger = logger
        self.name = name
        self.data = data
        self.t0 = 0.0

    def __enter__(self):
        self.t0 = time.perf_counter()
        self.logger.event("span_start", name=self.name, **self.data)
        return self

    def __exit__(self, exc_type, exc, tb):
        dt_ms = int((time.perf_counter() - self.t0) * 1000)
        if exc is not None:
            self.logger.event("span_error", name=self.name, duration_ms=dt_ms, **_error_fields(exc_type, exc, tb), **self.data)
        else:
            self.logger.event("span_end", name=self.name, duration_ms=dt_ms, **self.data)
        return False


class _LLMCall:
    def __init__(
        self,
        logger: RunLogger,
        *,
        node: str,
        chunk_index: Optional[int],
        messages: Any,
        model: Optional[str],
        extra: Dict[str, Any],
    ):
        self.logger = logger
        self.node = node
        self.chunk_index = chunk_index
        self.messages = messages
        self.model = model
        self.extra = extra
        self.t0 = 0.0

    def __enter__(self):
        self.t0 = time.perf_counter()
        self.logger.event(
            "llm_request",
            node=self.node,
            chunk_index=self.chunk_index,
            model=self.model,
            messages=_serialize_messages(self.messages),
            **self.extra,
        )
        return self

    def __exit__(self, exc_type, exc, tb):
        dt_ms = int((time.perf_counter() - self.t0) * 1000)
        base = {"node": self.node, "chunk_index": self.chunk_index, "model": self.model, "duration_ms": dt_ms}
        if exc is not None:
            self.logger.event("llm_error", **base, **_error_fields(exc_type, exc, tb))
        else:
            self.logger.event("llm_ok", **base)
        return False


def load_events(path: str) -> List[Dict[str, Any]]:
    if not path or not os.path.exists(path):
        return []
    events: List[Dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except ValueError:
                continue
    return events


def build_call_graph_mermaid_by_chunk(events: Iterable[Dict[str, Any]]) -> str:
    """
    按 chunk 分组的 Mermaid 调用图：
    - 统计来源：node_start 事件的日志顺序
    - 每个 chunk 一个 subgraph，chunk 之间按序号串联
    """
    by_chunk: Dict[int, List[str]] = {}
    for e in events:
        if e.get("event") != "node_start":
            continue
        idx = int(e.get("chunk_index", 0) or 0)
        by_chunk.setdefault(idx, []).append(str(e.get("node")))

    def _count_edges(seq: List[str]) -> Dict[Tuple[str, str], int]:
        counts: Dict[Tuple[str, str], int] = {}
        prev = "START"
        for n in seq:
            counts[(prev, n)] = counts.get((prev, n), 0) + 1
            prev = n
        if seq:
            counts[(prev, "END")] = counts.get((prev, "END"), 0) + 1
        return counts

    lines: List[str] = ["flowchart TD"]
    prev_end = "START"
    for idx in sorted(by_chunk.keys()):
        lines.append(f"  subgraph C{idx}[chunk {idx}]")
        lines.append("    direction TD")
        for (a, b), c in sorted(_count_edges(by_chunk[idx]).items()):
            label = f"|{c}|" if c > 1 else ""
            lines.append(f"    C{idx}_{a}[{a}] -->{label} C{idx}_{b}[{b}]")
        lines.append("  end")
        lines.append(f"  {prev_end} --> C{idx}_START")
        prev_end = f"C{idx}_END"

    if len(lines) == 1:
        lines.append("  START --> END")
    return "\n".join(lines) + "\n"

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from canon_state import normalize_name
from errors import ExtractionFormatError


DELTA_FORMAT_VERSION = 1

# 文本头 -> StateDelta 字段
SECTION_HEADERS: Dict[str, str] = {
    "RULES_INTRODUCED": "rules_introduced",
    "RULE_VIOLATIONS": "rule_violations",
    "ENTITY_CAPABILITIES": "capability_changes",
    "IRREVERSIBLE_FLAGS": "irreversible_flag_changes",
    "WORLD_FACTS": "world_facts",
    "TIMELINE_COMMITMENTS": "new_timeline_commitments",
}
FORMAT_VERSION_HEADER = "FORMAT_VERSION"

_HEADER_RE = re.compile(r"^\s*(?:#+\s*)?(?:\*\*)?([A-Z][A-Z0-9_ ]*[A-Z0-9])(?:\*\*)?\s*:(?:\*\*)?\s*(.*?)\s*$")
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")
_NONE_RE = re.compile(r"^[\(\[]?\s*(?:none|n/a)\s*[.\)\]]?\s*(?:\([^()]*\))?\s*$", re.IGNORECASE)
_TRAILING_PAREN_RE = re.compile(r"\s*\([^()]*\)\s*$")
_KEY_RE = re.compile(r"^[a-z0-9][a-z0-9_.\-]*$")
_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(?:\d+\.\d*|\.\d+)$")
_KIND_SUFFIX_RE = re.compile(r"\s*\[([A-Za-z_ \-]+)\]\s*$")

_VIOLATION_TRUE = ("violated", "true", "yes", "broken", "broke")
_VIOLATION_FALSE = ("false", "no", "not violated", "intact", "kept")

_MISSING = object()


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


@dataclass
class StateDelta:
    chunk_index: int
    rules_introduced: List[Dict[str, Any]] = field(default_factory=list)
    rule_violations: List[str] = field(default_factory=list)
    capability_changes: List[Dict[str, Any]] = field(default_factory=list)
    irreversible_flag_changes: List[Dict[str, Any]] = field(default_factory=list)
    world_facts: List[Dict[str, Any]] = field(default_factory=list)
    new_timeline_commitments: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def empty(cls, chunk_index: int, warning: str = "") -> "StateDelta":
        d = cls(chunk_index=int(chunk_index))
        if warning:
            d.warnings.append(warning)
        return d

    def is_empty(self) -> bool:
        return not (
            self.rules_introduced
            or self.rule_violations
            or self.capability_changes
            or self.irreversible_flag_changes
            or self.world_facts
            or self.new_timeline_commitments
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "rules_introduced": [dict(x) for x in self.rules_introduced],
            "rule_violations": list(self.rule_violations),
            "capability_changes": [dict(x) for x in self.capability_changes],
            "irreversible_flag_changes": [dict(x) for x in self.irreversible_flag_changes],
            "world_facts": [dict(x) for x in self.world_facts],
            "new_timeline_commitments": list(self.new_timeline_commitments),
            "warnings": list(self.warnings),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StateDelta":
        return cls(
            chunk_index=int(d.get("chunk_index", 0) or 0),
            rules_introduced=[dict(x) for x in (d.get("rules_introduced") or [])],
            rule_violations=[str(x) for x in (d.get("rule_violations") or [])],
            capability_changes=[dict(x) for x in (d.get("capability_changes") or [])],
            irreversible_flag_changes=[dict(x) for x in (d.get("irreversible_flag_changes") or [])],
            world_facts=[dict(x) for x in (d.get("world_facts") or [])],
            new_timeline_commitments=[str(x) for x in (d.get("new_timeline_commitments") or [])],
            warnings=[str(x) for x in (d.get("warnings") or [])],
            timestamp=str(d.get("timestamp") or _now_iso()),
        )


def _strip_parenthetical(s: str) -> str:
    prev = None
    while prev != s:
        prev = s
        s = _TRAILING_PAREN_RE.sub("", s)
    return s.strip()


def _unquote(s: str) -> Tuple[str, bool]:
    s = s.strip()
    if s[:1] in ('"', "'", "“"):
        closing = "”" if s[0] == "“" else s[0]
        end = s.find(closing, 1)
        if end == -1:
            return s[1:].strip(), True
        return s[1:end], True
    return s, False


def parse_scalar(raw: str) -> Any:
    """
    解析值：true/false、整数、小数、带引号字符串、裸字符串。
    空值返回内部哨兵 _MISSING。
    """
    s, quoted = _unquote(raw or "")
    if quoted:
        return s
    s = _strip_parenthetical(s).rstrip(",;").strip()
    if not s:
        return _MISSING
    low = s.lower()
    if low in ("true", "yes"):
        return True
    if low in ("false", "no"):
        return False
    if low in ("null", "none", "~"):
        return None
    if _INT_RE.match(s):
        return int(s)
    if _FLOAT_RE.match(s):
        return float(s)
    return s


def _split_key_value(body: str) -> Tuple[str, Optional[str]]:
    if ":" not in body:
        return body.strip(), None
    key, value = body.split(":", 1)
    return key.strip(), value.strip()


def _clean_key(key: str) -> str:
    key, _ = _unquote(key)
    key = re.sub(r"\s*\([^()]*\)", "", key)
    return normalize_name(key.strip("`*"))


def _match_header(line: str) -> Optional[Tuple[str, str]]:
    m = _HEADER_RE.match(line)
    if not m:
        return None
    name = "_".join(m.group(1).split())
    return name, m.group(2)


def _parse_rule_introduced(body: str) -> Optional[Dict[str, Any]]:
    kind = None
    m = _KIND_SUFFIX_RE.search(body)
    if m:
        kind = normalize_name(m.group(1)).replace("-", "_")
        body = body[: m.start()]
    text, quoted = _unquote(body)
    if not quoted:
        text = _strip_parenthetical(text)
    text = text.strip()
    if not text:
        return None
    return {"text": text, "kind": kind}


def _parse_entry(section: str, body: str, delta: StateDelta, line_no: int) -> None:
    def _warn(msg: str) -> None:
        delta.warnings.append(f"line {line_no}: {msg}: {body!r}")

    if section == "rules_introduced":
        item = _parse_rule_introduced(body)
        if item is None:
            _warn("empty rule text")
            return
        delta.rules_introduced.append(item)
        return

    if section == "new_timeline_commitments":
        text, _ = _unquote(body)
        text = text.strip()
        if not text:
            _warn("empty timeline commitment")
            return
        delta.new_timeline_commitments.append(text)
        return

    key_raw, value_raw = _split_key_value(body)
    key = _clean_key(key_raw)
    if not key or not _KEY_RE.match(key):
        _warn("malformed name")
        return

    if section == "rule_violations":
        if value_raw is not None:
            v = _strip_parenthetical(_unquote(value_raw)[0]).lower().rstrip(".")
            if v in _VIOLATION_FALSE:
                return
            if v and v not in _VIOLATION_TRUE:
                _warn("unrecognized violation marker")
                return
        delta.rule_violations.append(key)
        return

    if value_raw is None:
        _warn("missing ':' separator")
        return
    value = parse_scalar(value_raw)
    if value is _MISSING:
        _warn("missing value")
        return

    if section == "capability_changes":
        delta.capability_changes.append({"name": key, "value": value})
    elif section == "irreversible_flag_changes":
        if not isinstance(value, (bool, int, float)):
            _warn("irreversible flag value must be boolean or number")
            return
        delta.irreversible_flag_changes.append({"name": key, "value": value})
    elif section == "world_facts":
        delta.world_facts.append({"key": key, "value": value})


def parse_delta(delta_text: Any, chunk_index: int) -> StateDelta:
    """
    把抽取器输出的固定文本格式解析为 StateDelta。

    说明：
    - 各段以大写头 + 冒号开头；段体为 None 表示零条
    - 未知段整体忽略；已知段中的坏行跳过并记入 warnings
    - 空文本 / 非文本抛 ExtractionFormatError
    """
    if not isinstance(delta_text, str):
        raise ExtractionFormatError(f"delta text must be str, got {type(delta_text).__name__}")
    if not delta_text.strip():
        raise ExtractionFormatError("delta text is empty")

    delta = StateDelta(chunk_index=int(chunk_index))
    section: Optional[str] = None
    seen_known = False

    for line_no, raw_line in enumerate(delta_text.splitlines(), start=1):
        line = raw_line.rstrip()
        if not line.strip() or line.strip().startswith("```"):
            continue

        header = _match_header(line)
        if header is not None:
            name, inline = header
            if name == FORMAT_VERSION_HEADER:
                if inline.strip() != str(DELTA_FORMAT_VERSION):
                    delta.warnings.append(
                        f"unsupported delta format version {inline.strip()!r}; parsing best-effort"
                    )
                section = None
                continue
            section = SECTION_HEADERS.get(name)
            if section is None:
                continue
            seen_known = True
            if not inline or _NONE_RE.match(inline):
                continue
            body = _BULLET_RE.sub("", inline, count=1).strip()
            if body:
                _parse_entry(section, body, delta, line_no)
            continue

        if section is None:
            continue

        body = _BULLET_RE.sub("", line, count=1).strip()
        if not body or _NONE_RE.match(body):
            continue
        _parse_entry(section, body, delta, line_no)

    if not seen_known:
        delta.warnings.append("no recognized section headers in delta text")
    return delta


def format_delta(delta: StateDelta) -> str:
    """StateDelta -> 固定文本格式（模板抽取器与测试复用）。"""

    def _fmt_value(v: Any) -> str:
        if isinstance(v, bool):
            return "true" if v else "false"
        if v is None:
            return "null"
        if isinstance(v, (int, float)):
            return str(v)
        return '"' + str(v).replace('"', "'") + '"'

    lines: List[str] = [f"{FORMAT_VERSION_HEADER}: {DELTA_FORMAT_VERSION}"]

    def _section(header: str, items: List[str]) -> None:
        lines.append(f"{header}:")
        if items:
            lines.extend(f"- {x}" for x in items)
        else:
            lines.append("None")

    _section(
        "RULES_INTRODUCED",
        [_fmt_value(r.get("text", "")) + (f" [{r['kind']}]" if r.get("kind") else "") for r in delta.rules_introduced],
    )
    _section("RULE_VIOLATIONS", [f"{rid}: violated" for rid in delta.rule_violations])
    _section("ENTITY_CAPABILITIES", [f"{c['name']}: {_fmt_value(c['value'])}" for c in delta.capability_changes])
    _section("IRREVERSIBLE_FLAGS", [f"{f['name']}: {_fmt_value(f['value'])}" for f in delta.irreversible_flag_changes])
    _section("WORLD_FACTS", [f"{w['key']}: {_fmt_value(w['value'])}" for w in delta.world_facts])
    _section("TIMELINE_COMMITMENTS", [_fmt_value(t) for t in delta.new_timeline_commitments])
    return "\n".join(lines) + "\n"

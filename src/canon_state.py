from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from errors import (
    MonotonicityViolationError,
    RuleImmutableError,
    StateNotInitializedError,
    UnknownRuleError,
)


DEFAULT_RULE_COUNT = 7
RULE_KINDS = ("boundary", "temporal", "behavioral", "object_interaction", "procedural")

# 初始化时固定存在的不可逆 flag
DEFAULT_IRREVERSIBLE_FLAGS: Dict[str, Any] = {
    "bound_to_system": False,
    "contamination_level": 0,
}


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def normalize_name(name: str) -> str:
    """规则 id / capability / flag 名统一为小写 + 下划线。"""
    s = str(name or "").strip().lower()
    return "_".join(s.split())


def _normalize_kind(kind: Any) -> Optional[str]:
    k = normalize_name(str(kind or "")).replace("-", "_")
    return k if k in RULE_KINDS else None


@dataclass
class Rule:
    rule_id: str
    text: str = ""
    kind: Optional[str] = None
    active: bool = False
    violated: bool = False
    violation_count: int = 0
    established_at_chunk: Optional[int] = None

    @property
    def is_empty_slot(self) -> bool:
        return not (self.text or "").strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "text": self.text,
            "kind": self.kind,
            "active": self.active,
            "violated": self.violated,
            "violation_count": self.violation_count,
            "established_at_chunk": self.established_at_chunk,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Rule":
        return cls(
            rule_id=str(d.get("rule_id", "")),
            text=str(d.get("text") or ""),
            kind=_normalize_kind(d.get("kind")),
            active=bool(d.get("active", False)),
            violated=bool(d.get("violated", False)),
            violation_count=int(d.get("violation_count", 0) or 0),
            established_at_chunk=d.get("established_at_chunk"),
        )


@dataclass
class NarrativeDeltaLogEntry:
    chunk_index: int
    changes_applied: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "changes_applied": list(self.changes_applied),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "NarrativeDeltaLogEntry":
        return cls(
            chunk_index=int(d.get("chunk_index", 0) or 0),
            changes_applied=[str(x) for x in (d.get("changes_applied") or [])],
            timestamp=str(d.get("timestamp") or _now_iso()),
        )


@dataclass
class CanonicalState:
    session_id: str
    user_params: Dict[str, Any] = field(default_factory=dict)
    rules: List[Rule] = field(default_factory=list)
    entity_capabilities: Dict[str, Any] = field(default_factory=dict)
    irreversible_flags: Dict[str, Any] = field(default_factory=dict)
    world_facts: Dict[str, Any] = field(default_factory=dict)
    timeline_commitments: List[str] = field(default_factory=list)
    delta_log: List[NarrativeDeltaLogEntry] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_params": copy.deepcopy(self.user_params),
            "rules": [r.to_dict() for r in self.rules],
            "entity_capabilities": dict(self.entity_capabilities),
            "irreversible_flags": dict(self.irreversible_flags),
            "world_facts": dict(self.world_facts),
            "timeline_commitments": list(self.timeline_commitments),
            "delta_log": [e.to_dict() for e in self.delta_log],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CanonicalState":
        return cls(
            session_id=str(d.get("session_id", "")),
            user_params=copy.deepcopy(d.get("user_params") or {}),
            rules=[Rule.from_dict(x) for x in (d.get("rules") or []) if isinstance(x, dict)],
            entity_capabilities=dict(d.get("entity_capabilities") or {}),
            irreversible_flags=dict(d.get("irreversible_flags") or {}),
            world_facts=dict(d.get("world_facts") or {}),
            timeline_commitments=[str(x) for x in (d.get("timeline_commitments") or [])],
            delta_log=[NarrativeDeltaLogEntry.from_dict(x) for x in (d.get("delta_log") or []) if isinstance(x, dict)],
            created_at=str(d.get("created_at") or _now_iso()),
            updated_at=str(d.get("updated_at") or _now_iso()),
        )


def _rule_count_from_params(user_params: Dict[str, Any]) -> int:
    raw = user_params.get("rule_count", user_params.get("ruleCount", DEFAULT_RULE_COUNT))
    try:
        n = int(raw)
    except (TypeError, ValueError):
        n = DEFAULT_RULE_COUNT
    return max(1, n)


def _seed_rules(user_params: Dict[str, Any]) -> List[Dict[str, Any]]:
    """user_params['rules'] 支持字符串或 {text, kind}。"""
    out: List[Dict[str, Any]] = []
    for it in user_params.get("rules") or []:
        if isinstance(it, str) and it.strip():
            out.append({"text": it.strip(), "kind": None})
        elif isinstance(it, dict) and str(it.get("text", "") or "").strip():
            out.append({"text": str(it.get("text")).strip(), "kind": it.get("kind") or it.get("type")})
    return out


def check_flag_transition(name: str, old: Any, new: Any) -> None:
    """
    校验不可逆 flag 的一次写入。
    - 只接受 bool / 数字
    - bool 与数字互换视为违规
    """
    if not isinstance(new, (bool, int, float)):
        raise TypeError(f"irreversible flag '{name}' must be bool or number, got {type(new).__name__}")
    if old is None:
        return
    old_is_bool = isinstance(old, bool)
    new_is_bool = isinstance(new, bool)
    if old_is_bool != new_is_bool:
        raise MonotonicityViolationError(name, old, new, reason="type_change")
    if old_is_bool:
        if old and not new:
            raise MonotonicityViolationError(name, old, new, reason="boolean_reset")
        return
    if new < old:
        raise MonotonicityViolationError(name, old, new, reason="ordinal_decrease")


class CanonStateStore:
    """
    单个会话的“规范状态”持有者。

    说明：
    - 只有本类的方法可以修改状态；外部读取拿到的是深拷贝
    - 每个会话一个实例，不跨会话共享
    """

    def __init__(self, state: Optional[CanonicalState] = None):
        self._state: Optional[CanonicalState] = state

    @property
    def initialized(self) -> bool:
        return self._state is not None

    def _require(self) -> CanonicalState:
        if self._state is None:
            raise StateNotInitializedError()
        return self._state

    def _touch(self) -> None:
        self._require().updated_at = _now_iso()

    # === 生命周期 ===

    def initialize(self, session_id: str, user_params: Optional[Dict[str, Any]] = None) -> CanonicalState:
        params = copy.deepcopy(user_params or {})
        rule_count = _rule_count_from_params(params)
        seeds = _seed_rules(params)
        if len(seeds) > rule_count:
            rule_count = len(seeds)

        rules: List[Rule] = []
        for i in range(1, rule_count + 1):
            rule = Rule(rule_id=f"rule_{i}")
            if i <= len(seeds):
                rule.text = seeds[i - 1]["text"]
                rule.kind = _normalize_kind(seeds[i - 1]["kind"])
                rule.active = True
                rule.established_at_chunk = 0
            rules.append(rule)

        self._state = CanonicalState(
            session_id=session_id,
            user_params=params,
            rules=rules,
            irreversible_flags=dict(DEFAULT_IRREVERSIBLE_FLAGS),
            world_facts={
                "location": params.get("location") or None,
                "custom_location": params.get("custom_location") or params.get("customLocation") or None,
                "time_anchor": None,
            },
        )
        changes = ["State tracking initialized", f"Rule slots created: {rule_count}"]
        if seeds:
            changes.append(f"Rules seeded: {len(seeds)}")
        self.append_delta_log(0, changes)
        return self.get()

    def get(self) -> CanonicalState:
        return copy.deepcopy(self._require())

    def snapshot(self) -> Dict[str, Any]:
        return self._require().to_dict()

    def serialize(self) -> str:
        return json.dumps(self.snapshot(), ensure_ascii=False, indent=2)

    @classmethod
    def deserialize(cls, text: str) -> "CanonStateStore":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("serialized state must be a JSON object")
        return cls.from_snapshot(data)

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "CanonStateStore":
        return cls(CanonicalState.from_dict(copy.deepcopy(snapshot)))

    # === 查询 ===

    def get_rule(self, rule_id: str) -> Rule:
        rid = normalize_name(rule_id)
        for r in self._require().rules:
            if r.rule_id == rid:
                return copy.deepcopy(r)
        raise UnknownRuleError(rid)

    def active_rules(self) -> List[Rule]:
        return [copy.deepcopy(r) for r in self._require().rules if r.active and not r.is_empty_slot]

    def violated_rules(self) -> List[Rule]:
        return [copy.deepcopy(r) for r in self._require().rules if r.violated]

    def summary(self) -> Dict[str, Any]:
        st = self._require()
        return {
            "session_id": st.session_id,
            "rules_total": len(st.rules),
            "rules_active": sum(1 for r in st.rules if r.active),
            "rules_violated": sum(1 for r in st.rules if r.violated),
            "entity_capabilities_count": len(st.entity_capabilities),
            "contamination_level": st.irreversible_flags.get("contamination_level", 0),
            "bound_to_system": st.irreversible_flags.get("bound_to_system", False),
            "timeline_commitments_count": len(st.timeline_commitments),
            "delta_log_entries": len(st.delta_log),
        }

    # === 写入路径 ===

    def add_rule(
        self,
        rule_id: Optional[str],
        text: str,
        kind: Optional[str] = None,
        chunk_index: Optional[int] = None,
    ) -> Rule:
        """
        建立一条规则：
        - rule_id 为空：填充下一个空槽位；没有空槽位则追加 rule_<n+1>
        - 指定 rule_id：该槽位必须为空（已建立的规则文本不可改）
        """
        st = self._require()
        text = str(text or "").strip()
        if not text:
            raise ValueError("rule text must be non-empty")

        target: Optional[Rule] = None
        if rule_id:
            rid = normalize_name(rule_id)
            for r in st.rules:
                if r.rule_id == rid:
                    target = r
                    break
            if target is None:
                raise UnknownRuleError(rid)
            if not target.is_empty_slot:
                raise RuleImmutableError(rid)
        else:
            for r in st.rules:
                if r.is_empty_slot:
                    target = r
                    break
            if target is None:
                target = Rule(rule_id=f"rule_{len(st.rules) + 1}")
                st.rules.append(target)

        target.text = text
        target.kind = _normalize_kind(kind)
        target.active = True
        target.established_at_chunk = chunk_index
        self._touch()
        return copy.deepcopy(target)

    def mark_rule_violated(self, rule_id: str, chunk_index: Optional[int] = None) -> Rule:
        st = self._require()
        rid = normalize_name(rule_id)
        for r in st.rules:
            if r.rule_id == rid:
                r.violated = True
                r.violation_count += 1
                self._touch()
                return copy.deepcopy(r)
        raise UnknownRuleError(rid)

    def set_capability(self, name: str, value: Any) -> Any:
        """返回旧值（不存在为 None）。"""
        st = self._require()
        key = normalize_name(name)
        old = st.entity_capabilities.get(key)
        st.entity_capabilities[key] = value
        self._touch()
        return old

    def set_irreversible_flag(self, name: str, value: Any) -> Any:
        st = self._require()
        key = normalize_name(name)
        old = st.irreversible_flags.get(key)
        check_flag_transition(key, old, value)
        st.irreversible_flags[key] = value
        self._touch()
        return old

    def add_world_fact(self, key: str, value: Any) -> Any:
        st = self._require()
        k = normalize_name(key)
        old = st.world_facts.get(k)
        st.world_facts[k] = value
        self._touch()
        return old

    def append_timeline_commitment(self, text: str) -> bool:
        """追加时间线承诺；完全重复的条目跳过（返回 False）。"""
        st = self._require()
        t = str(text or "").strip()
        if not t:
            raise ValueError("timeline commitment must be non-empty")
        if t in st.timeline_commitments:
            return False
        st.timeline_commitments.append(t)
        self._touch()
        return True

    def append_delta_log(self, chunk_index: int, changes: List[str]) -> NarrativeDeltaLogEntry:
        st = self._require()
        entry = NarrativeDeltaLogEntry(chunk_index=int(chunk_index), changes_applied=[str(x) for x in changes])
        st.delta_log.append(entry)
        self._touch()
        return copy.deepcopy(entry)

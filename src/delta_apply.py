from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from canon_state import CanonStateStore, normalize_name
from delta_parser import StateDelta
from errors import MonotonicityViolationError, RuleImmutableError, UnknownRuleError


CONTAMINATION_FLAG = "contamination_level"


@dataclass
class ApplyResult:
    chunk_index: int
    changes_applied: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    policy_violations: List[MonotonicityViolationError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "changes_applied": list(self.changes_applied),
            "warnings": list(self.warnings),
            "policy_violations": [str(e) for e in self.policy_violations],
        }


def _fmt(v: Any) -> str:
    if isinstance(v, str):
        return f'"{v}"'
    return repr(v) if not isinstance(v, bool) else ("true" if v else "false")


def _is_revocation(old: Any, new: Any) -> bool:
    return bool(old) and not bool(new)


def _is_ordinal(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _fold_contamination(before: Any, escalated: Any, reported: Any) -> Any:
    """
    同一 chunk 既有规则违反又上报了 contamination_level：
    上报值不低于本 chunk 开始前的值时，取 max(上报值, 违反后抬升的值)。
    低于开始前的值仍按回退处理。
    """
    if not (_is_ordinal(before) and _is_ordinal(escalated) and _is_ordinal(reported)):
        return reported
    if reported < before:
        return reported
    return max(reported, escalated)


def _set_flag(store: CanonStateStore, name: str, value: Any, result: ApplyResult) -> None:
    try:
        old = store.set_irreversible_flag(name, value)
    except MonotonicityViolationError as e:
        result.policy_violations.append(e)
        result.warnings.append(f"monotonicity violation skipped: {e}")
        return
    except TypeError as e:
        result.warnings.append(f"irreversible flag skipped: {e}")
        return
    result.changes_applied.append(f"Flag: {name} {_fmt(old)} -> {_fmt(value)}")


def apply_delta(store: CanonStateStore, delta: StateDelta, *, logger: Any = None) -> ApplyResult:
    """
    把一个 chunk 的 StateDelta 按固定顺序写入规范状态：
    0) 新规则 1) 规则违反（并抬升 contamination_level） 2) 能力
    3) 不可逆 flag 4) 世界事实 5) 时间线

    说明：
    - 单条失败不影响其它条目；失败进入 warnings / policy_violations
    - 无论是否有变更，都会写一条 delta log
    """
    chunk_index = int(delta.chunk_index)
    result = ApplyResult(chunk_index=chunk_index)

    # 0) 新规则：填空槽位
    for item in delta.rules_introduced:
        text = str(item.get("text", "") or "").strip()
        if not text:
            continue
        if any(r.text == text for r in store.get().rules):
            continue
        try:
            rule = store.add_rule(None, text, kind=item.get("kind"), chunk_index=chunk_index)
        except (RuleImmutableError, UnknownRuleError, ValueError) as e:
            result.warnings.append(f"rule introduction skipped: {e}")
            continue
        result.changes_applied.append(f"Rule established: {rule.rule_id}")

    # 1) 规则违反
    contamination_before = store.get().irreversible_flags.get(CONTAMINATION_FLAG, 0)
    violations_applied = 0
    for rule_id in delta.rule_violations:
        try:
            rule = store.mark_rule_violated(rule_id, chunk_index=chunk_index)
        except UnknownRuleError as e:
            result.warnings.append(f"unknown rule id skipped: {e.rule_id}")
            continue
        violations_applied += 1
        result.changes_applied.append(f"Rule violated: {rule.rule_id} (count={rule.violation_count})")

    if violations_applied:
        current = store.get().irreversible_flags.get(CONTAMINATION_FLAG, 0)
        if not _is_ordinal(current):
            result.warnings.append(f"{CONTAMINATION_FLAG} is not ordinal; escalation skipped")
        else:
            _set_flag(store, CONTAMINATION_FLAG, current + violations_applied, result)

    # 2) 能力：chunk 内后写覆盖先写
    latest: Dict[str, Any] = {}
    for change in delta.capability_changes:
        latest[normalize_name(change.get("name", ""))] = change.get("value")
    current_caps = store.get().entity_capabilities
    for name, value in latest.items():
        if not name:
            continue
        if name in current_caps and current_caps[name] == value and type(current_caps[name]) is type(value):
            continue
        old = store.set_capability(name, value)
        if _is_revocation(old, value):
            result.changes_applied.append(f"Capability revoked: {name} {_fmt(old)} -> {_fmt(value)}")
            result.warnings.append(f"capability revoked explicitly: {name}")
        else:
            result.changes_applied.append(f"Capability: {name} = {_fmt(value)}")

    # 3) 不可逆 flag
    for change in delta.irreversible_flag_changes:
        name = normalize_name(change.get("name", ""))
        value = change.get("value")
        if not name:
            continue
        flags = store.get().irreversible_flags
        if name == CONTAMINATION_FLAG and violations_applied:
            value = _fold_contamination(contamination_before, flags.get(name), value)
        if name in flags and flags[name] == value and isinstance(flags[name], bool) == isinstance(value, bool):
            continue
        _set_flag(store, name, value, result)

    # 4) 世界事实
    for fact in delta.world_facts:
        key = normalize_name(fact.get("key", ""))
        if not key:
            continue
        value = fact.get("value")
        old = store.add_world_fact(key, value)
        if old != value:
            result.changes_applied.append(f"World fact: {key} = {_fmt(value)}")

    # 5) 时间线（只追加）
    for text in delta.new_timeline_commitments:
        t = str(text or "").strip()
        if not t:
            continue
        if store.append_timeline_commitment(t):
            result.changes_applied.append(f"Timeline: {t}")

    store.append_delta_log(chunk_index, result.changes_applied)

    if logger:
        logger.event(
            "delta_applied",
            chunk_index=chunk_index,
            changes_count=len(result.changes_applied),
            warnings_count=len(result.warnings),
            policy_violations_count=len(result.policy_violations),
        )
    return result

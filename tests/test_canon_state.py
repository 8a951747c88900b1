"""
Canonical state store tests: initialization, the sanctioned write paths,
and the invariants they enforce (rule immutability, flag monotonicity,
append-only timeline).
"""

import pytest

from canon_state import CanonStateStore, check_flag_transition
from errors import (
    MonotonicityViolationError,
    RuleImmutableError,
    StateNotInitializedError,
    UnknownRuleError,
)


@pytest.fixture
def store():
    s = CanonStateStore()
    s.initialize("sess-1", {"rule_count": 3, "location": "rest stop"})
    return s


class TestInitialize:

    def test_rule_slots_sized_by_rule_count(self, store):
        st = store.get()
        assert [r.rule_id for r in st.rules] == ["rule_1", "rule_2", "rule_3"]
        assert all(r.is_empty_slot and not r.active for r in st.rules)

    def test_camel_case_rule_count_is_accepted(self):
        s = CanonStateStore()
        s.initialize("sess", {"ruleCount": 5})
        assert len(s.get().rules) == 5

    def test_default_flags_and_world_facts(self, store):
        st = store.get()
        assert st.irreversible_flags == {"bound_to_system": False, "contamination_level": 0}
        assert st.world_facts["location"] == "rest stop"
        assert st.world_facts["time_anchor"] is None

    def test_initialization_writes_chunk_zero_log_entry(self, store):
        log = store.get().delta_log
        assert len(log) == 1
        assert log[0].chunk_index == 0
        assert "State tracking initialized" in log[0].changes_applied

    def test_seeded_rules_are_active(self):
        s = CanonStateStore()
        s.initialize("sess", {"rule_count": 2, "rules": ["Never look back", {"text": "Stay in the car", "kind": "boundary"}]})
        rules = s.get().rules
        assert rules[0].text == "Never look back" and rules[0].active
        assert rules[1].kind == "boundary" and rules[1].established_at_chunk == 0

    def test_operations_before_initialize_fail(self):
        s = CanonStateStore()
        with pytest.raises(StateNotInitializedError):
            s.get()
        with pytest.raises(StateNotInitializedError):
            s.set_capability("x", True)


class TestReadOnlyView:

    def test_get_returns_a_copy(self, store):
        view = store.get()
        view.timeline_commitments.append("tampered")
        view.rules[0].text = "tampered"
        st = store.get()
        assert st.timeline_commitments == []
        assert st.rules[0].text == ""

    def test_serialize_round_trip_preserves_state(self, store):
        store.mark_rule_violated("rule_2", chunk_index=1)
        store.set_irreversible_flag("protected", True)
        store.append_timeline_commitment("Arrived at 9:00 PM")
        restored = CanonStateStore.deserialize(store.serialize())
        assert restored.snapshot() == store.snapshot()


class TestRules:

    def test_mark_rule_violated_increments_count(self, store):
        store.mark_rule_violated("rule_1", chunk_index=1)
        rule = store.mark_rule_violated("Rule 1", chunk_index=2)
        assert rule.violated is True
        assert rule.violation_count == 2

    def test_unknown_rule_raises(self, store):
        with pytest.raises(UnknownRuleError):
            store.mark_rule_violated("rule_99", chunk_index=1)

    def test_add_rule_fills_next_empty_slot(self, store):
        rule = store.add_rule(None, "Do not answer the phone", kind="behavioral", chunk_index=2)
        assert rule.rule_id == "rule_1"
        assert rule.active and rule.established_at_chunk == 2

    def test_rule_text_is_immutable(self, store):
        store.add_rule("rule_1", "Original text", chunk_index=1)
        with pytest.raises(RuleImmutableError):
            store.add_rule("rule_1", "Rewritten text", chunk_index=2)
        assert store.get_rule("rule_1").text == "Original text"

    def test_add_rule_appends_when_slots_are_full(self, store):
        for i in range(3):
            store.add_rule(None, f"rule text {i}", chunk_index=1)
        extra = store.add_rule(None, "one more", chunk_index=2)
        assert extra.rule_id == "rule_4"


class TestIrreversibleFlags:

    def test_boolean_flag_moves_false_to_true(self, store):
        store.set_irreversible_flag("bound_to_system", True)
        assert store.get().irreversible_flags["bound_to_system"] is True

    def test_boolean_flag_cannot_reset(self, store):
        store.set_irreversible_flag("protected", True)
        with pytest.raises(MonotonicityViolationError):
            store.set_irreversible_flag("protected", False)
        assert store.get().irreversible_flags["protected"] is True

    def test_ordinal_flag_cannot_decrease(self, store):
        store.set_irreversible_flag("contamination_level", 3)
        with pytest.raises(MonotonicityViolationError):
            store.set_irreversible_flag("contamination_level", 2)
        assert store.get().irreversible_flags["contamination_level"] == 3

    def test_type_change_is_a_violation(self):
        with pytest.raises(MonotonicityViolationError):
            check_flag_transition("protected", True, 1)
        with pytest.raises(MonotonicityViolationError):
            check_flag_transition("level", 0, True)

    def test_non_numeric_value_rejected(self, store):
        with pytest.raises(TypeError):
            store.set_irreversible_flag("mood", "dark")


class TestTimeline:

    def test_append_preserves_order(self, store):
        store.append_timeline_commitment("first")
        store.append_timeline_commitment("second")
        assert store.get().timeline_commitments == ["first", "second"]

    def test_exact_duplicates_are_skipped(self, store):
        assert store.append_timeline_commitment("Arrived at 9 PM") is True
        assert store.append_timeline_commitment("Arrived at 9 PM") is False
        assert store.get().timeline_commitments == ["Arrived at 9 PM"]


class TestSummary:

    def test_summary_counts(self, store):
        store.add_rule(None, "Stay in the car", chunk_index=1)
        store.mark_rule_violated("rule_1", chunk_index=2)
        store.set_irreversible_flag("contamination_level", 1)
        store.append_timeline_commitment("Left at 10 PM")
        s = store.summary()
        assert s["rules_total"] == 3
        assert s["rules_active"] == 1
        assert s["rules_violated"] == 1
        assert s["contamination_level"] == 1
        assert s["timeline_commitments_count"] == 1

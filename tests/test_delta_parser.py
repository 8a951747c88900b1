"""
Delta parser tests: fixed headers, "None" bodies, unknown sections,
malformed lines and hard failures on non-text input.
"""

import pytest

from conftest import NONE_DELTA
from delta_parser import StateDelta, format_delta, parse_delta
from errors import ExtractionFormatError


FULL_DELTA = """
RULE_VIOLATIONS:
- rule_1: violated (if a rule was broken)
ENTITY_CAPABILITIES:
- knows_narrator_name: true
- Can Enter Vehicle: yes
IRREVERSIBLE_FLAGS:
- protected: true
- contamination_level: 2
WORLD_FACTS:
- current_time: "10:30 PM"
- radio_station: 88.1
TIMELINE_COMMITMENTS:
- "Narrator stepped out of vehicle at 10:15 PM"
- Lights went out at 10:20 PM (power failure)
"""


class TestSections:

    def test_full_delta(self):
        d = parse_delta(FULL_DELTA, 3)
        assert d.chunk_index == 3
        assert d.rule_violations == ["rule_1"]
        assert d.capability_changes == [
            {"name": "knows_narrator_name", "value": True},
            {"name": "can_enter_vehicle", "value": True},
        ]
        assert d.irreversible_flag_changes == [
            {"name": "protected", "value": True},
            {"name": "contamination_level", "value": 2},
        ]
        assert d.world_facts == [
            {"key": "current_time", "value": "10:30 PM"},
            {"key": "radio_station", "value": 88.1},
        ]
        assert d.new_timeline_commitments == [
            "Narrator stepped out of vehicle at 10:15 PM",
            "Lights went out at 10:20 PM (power failure)",
        ]
        assert d.warnings == []

    def test_all_none_sections_yield_empty_delta(self):
        d = parse_delta(NONE_DELTA, 1)
        assert d.is_empty()
        assert d.warnings == []

    def test_inline_none_on_header_line(self):
        d = parse_delta("RULE_VIOLATIONS: None\nTIMELINE_COMMITMENTS: (none)\n", 1)
        assert d.is_empty()

    def test_markdown_decorated_headers(self):
        d = parse_delta("## RULE_VIOLATIONS:\n- rule_2: violated\n**WORLD_FACTS:**\n- weather: rain\n", 2)
        assert d.rule_violations == ["rule_2"]
        assert d.world_facts == [{"key": "weather", "value": "rain"}]

    def test_rules_introduced_with_kind(self):
        d = parse_delta('RULES_INTRODUCED:\n- "Never open the trunk" [object_interaction]\n', 1)
        assert d.rules_introduced == [{"text": "Never open the trunk", "kind": "object_interaction"}]

    def test_not_violated_marker_is_not_a_violation(self):
        d = parse_delta("RULE_VIOLATIONS:\n- rule_1: not violated\n", 1)
        assert d.rule_violations == []
        assert d.warnings == []


class TestDegradation:

    def test_unknown_headers_are_ignored(self):
        d = parse_delta("MOOD_NOTES:\n- dread: high\nRULE_VIOLATIONS:\n- rule_3: violated\n", 1)
        assert d.rule_violations == ["rule_3"]
        assert d.warnings == []

    def test_malformed_lines_are_skipped_with_warning(self):
        text = "ENTITY_CAPABILITIES:\n- this line has no separator\n- can_speak: true\n"
        d = parse_delta(text, 1)
        assert d.capability_changes == [{"name": "can_speak", "value": True}]
        assert len(d.warnings) == 1
        assert "separator" in d.warnings[0]

    def test_non_numeric_flag_value_is_skipped(self):
        d = parse_delta("IRREVERSIBLE_FLAGS:\n- protected: maybe\n- marked: true\n", 1)
        assert d.irreversible_flag_changes == [{"name": "marked", "value": True}]
        assert len(d.warnings) == 1

    def test_text_without_known_headers_yields_empty_delta_with_warning(self):
        d = parse_delta("Sorry, I could not find any changes.", 1)
        assert d.is_empty()
        assert d.warnings

    def test_unsupported_format_version_warns_and_continues(self):
        d = parse_delta("FORMAT_VERSION: 9\nRULE_VIOLATIONS:\n- rule_1: violated\n", 1)
        assert d.rule_violations == ["rule_1"]
        assert any("format version" in w for w in d.warnings)

    @pytest.mark.parametrize("bad", ["", "   \n\t", None, 42])
    def test_empty_or_non_text_input_raises(self, bad):
        with pytest.raises(ExtractionFormatError):
            parse_delta(bad, 1)


class TestFormatting:

    def test_formatted_delta_parses_back(self):
        original = StateDelta(
            chunk_index=4,
            rule_violations=["rule_2"],
            capability_changes=[{"name": "can_follow", "value": True}],
            irreversible_flag_changes=[{"name": "contamination_level", "value": 1}],
            world_facts=[{"key": "current_time", "value": "11:00 PM"}],
            new_timeline_commitments=["Door locked at 11:00 PM"],
        )
        parsed = parse_delta(format_delta(original), 4)
        assert parsed.rule_violations == original.rule_violations
        assert parsed.capability_changes == original.capability_changes
        assert parsed.irreversible_flag_changes == original.irreversible_flag_changes
        assert parsed.world_facts == original.world_facts
        assert parsed.new_timeline_commitments == original.new_timeline_commitments

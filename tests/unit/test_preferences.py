"""Tests for per-run preference profiles and update cadence."""

import re

import pytest

from ticket_operator.preferences import (
    PreferencesError,
    UserPreferences,
    apply_patch,
    is_critical_intent,
    parse_patch,
    parse_serialized,
    render,
    serialize,
    should_post_update,
)


class TestParsePatch:
    def test_normalizes_enums_and_drops_unknown_keys(self):
        patch = parse_patch({"tone": " Friendly ", "colour": "blue"})

        assert patch == {"tone": "friendly"}

    def test_deduplicates_ids(self):
        patch = parse_patch({"blocked_tool_ids": ["tool.a", " tool.a ", "tool.b"]})

        assert patch == {"blocked_tool_ids": ["tool.a", "tool.b"]}

    @pytest.mark.parametrize("value,message", [
        ([], "must be a JSON object"),
        ({"tone": "rude"}, '"tone" must be one of: direct, balanced, friendly.'),
        ({"update_cadence": 3}, '"update_cadence" must be a string.'),
        ({"preferred_agent_ids": "codex"}, "must be an array of definition ids"),
        ({"preferred_agent_ids": [1]}, "entries must be strings"),
        ({"preferred_agent_ids": ["-bad"]}, 'invalid definition id: "-bad"'),
    ])
    def test_rejects_invalid_values(self, value, message):
        with pytest.raises(PreferencesError, match=re.escape(message)):
            parse_patch(value)


class TestProfile:
    def test_apply_patch_replaces_lists(self):
        profile = UserPreferences(preferred_tool_ids=["tool.a"])

        updated = apply_patch(profile, {"preferred_tool_ids": ["tool.b"], "tone": "balanced"})

        assert updated.preferred_tool_ids == ["tool.b"]
        assert updated.tone == "balanced"
        assert profile.preferred_tool_ids == ["tool.a"]

    def test_dict_round_trip(self):
        profile = UserPreferences(update_cadence="low", blocked_agent_ids=["teddy"])

        data = profile.to_dict()

        assert data["version"] == 1
        assert UserPreferences.from_dict(data) == profile

    def test_from_empty_dict_is_default(self):
        assert UserPreferences.from_dict(None) == UserPreferences()

    def test_serialized_form(self):
        profile = UserPreferences(tone="friendly")

        text = serialize(profile)

        assert text.startswith("[user_preferences_v1]\n")
        assert parse_serialized(text) == profile
        assert parse_serialized("[user_preferences_v1]\nnot json") is None
        assert parse_serialized('{"tone": "shouty"}') is None

    def test_render_lists_every_field(self):
        text = render(UserPreferences(blocked_tool_ids=["tool.x"]))

        assert "tone: direct" in text
        assert "blocked_tool_ids: tool.x" in text
        assert "preferred_agent_ids: (none)" in text


class TestCadence:
    @pytest.mark.parametrize("intent", ["plan_ready", "code_start", "pr_created"])
    def test_high_posts_everything(self, intent):
        assert should_post_update(UserPreferences(update_cadence="high"), intent)

    def test_balanced_mutes_routine_progress(self):
        profile = UserPreferences(update_cadence="balanced")

        assert not should_post_update(profile, "discover_start")
        assert not should_post_update(profile, "worktree_ready")
        assert should_post_update(profile, "plan_ready")

    def test_low_posts_only_critical(self):
        profile = UserPreferences(update_cadence="low")

        assert not should_post_update(profile, "pr_created")
        assert should_post_update(profile, "blocked_notice")
        assert should_post_update(profile, "qa_passed")
        assert should_post_update(profile, "sandbox_ready")

    def test_commands_and_status_always_post(self):
        profile = UserPreferences(update_cadence="low")

        assert should_post_update(profile, "command_help")
        assert should_post_update(profile, "status_ping")

    @pytest.mark.parametrize("intent,expected", [
        ("ci_smoke_failed", True),
        ("clarification_request", True),
        ("handoff", True),
        ("plan_start", False),
    ])
    def test_critical_intents(self, intent, expected):
        assert is_critical_intent(intent) is expected

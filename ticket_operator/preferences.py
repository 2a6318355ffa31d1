"""
Per-run user preferences.

Preferences control reply tone and verbosity and how chatty progress
updates are. They are edited through the ``prefs`` command and stored on
the run as a serialized profile.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields
from typing import Any, Optional

from ticket_operator.errors import OperatorError


TONES = ("direct", "balanced", "friendly")
UPDATE_CADENCES = ("high", "balanced", "low")
REPLY_VERBOSITIES = ("short", "balanced", "detailed")
RISK_LEVELS = ("low", "medium", "high")

ID_LIST_FIELDS = (
    "preferred_agent_ids",
    "blocked_agent_ids",
    "preferred_tool_ids",
    "blocked_tool_ids",
    "preferred_resource_ids",
    "blocked_resource_ids",
)

DEFINITION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

SERIALIZED_PREFIX = "[user_preferences_v1]"

# Routine progress updates muted under the balanced cadence
BALANCED_SUPPRESSED = frozenset({
    "discover_start",
    "plan_start",
    "code_start",
    "ticket_take_ownership",
    "worktree_ready",
    "resume_from_existing_pr",
})


class PreferencesError(OperatorError):
    """Raised when a preferences patch is invalid."""
    pass


@dataclass
class UserPreferences:
    """Preference profile for one run."""

    tone: str = "direct"
    update_cadence: str = "high"
    reply_verbosity: str = "balanced"
    max_risk_level: str = "high"
    preferred_agent_ids: list[str] = field(default_factory=list)
    blocked_agent_ids: list[str] = field(default_factory=list)
    preferred_tool_ids: list[str] = field(default_factory=list)
    blocked_tool_ids: list[str] = field(default_factory=list)
    preferred_resource_ids: list[str] = field(default_factory=list)
    blocked_resource_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"version": 1}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = list(value) if isinstance(value, list) else value
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> UserPreferences:
        """Build a profile, validating every field. None gives the defaults."""
        if not data:
            return cls()
        return apply_patch(cls(), parse_patch(data))


def _parse_enum(value: Any, allowed: tuple[str, ...], name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise PreferencesError(f'"{name}" must be a string.')
    normalized = value.strip().lower()
    if normalized not in allowed:
        raise PreferencesError(f'"{name}" must be one of: {", ".join(allowed)}.')
    return normalized


def _parse_ids(value: Any, name: str) -> Optional[list[str]]:
    if value is None:
        return None
    if not isinstance(value, list):
        raise PreferencesError(f'"{name}" must be an array of definition ids.')
    unique: list[str] = []
    for entry in value:
        if not isinstance(entry, str):
            raise PreferencesError(f'"{name}" entries must be strings.')
        trimmed = entry.strip()
        if not DEFINITION_ID_PATTERN.match(trimmed):
            raise PreferencesError(f'"{name}" contains invalid definition id: "{entry}".')
        if trimmed not in unique:
            unique.append(trimmed)
    return unique


def parse_patch(value: Any) -> dict[str, Any]:
    """
    Validate a preferences patch.

    Unknown keys are ignored. Returns only the keys that were supplied.

    Raises:
        PreferencesError: If the patch is not an object or a field is invalid.
    """
    if not isinstance(value, dict):
        raise PreferencesError("Preferences patch must be a JSON object.")
    patch: dict[str, Any] = {
        "tone": _parse_enum(value.get("tone"), TONES, "tone"),
        "update_cadence": _parse_enum(value.get("update_cadence"), UPDATE_CADENCES, "update_cadence"),
        "reply_verbosity": _parse_enum(
            value.get("reply_verbosity"), REPLY_VERBOSITIES, "reply_verbosity"
        ),
        "max_risk_level": _parse_enum(value.get("max_risk_level"), RISK_LEVELS, "max_risk_level"),
    }
    for name in ID_LIST_FIELDS:
        patch[name] = _parse_ids(value.get(name), name)
    return {k: v for k, v in patch.items() if v is not None}


def apply_patch(profile: UserPreferences, patch: dict[str, Any]) -> UserPreferences:
    """Return a new profile with the patch applied. Lists are replaced, not merged."""
    data = profile.to_dict()
    data.pop("version")
    data.update(patch)
    return UserPreferences(**data)


def serialize(profile: UserPreferences) -> str:
    return f"{SERIALIZED_PREFIX}\n{json.dumps(profile.to_dict(), indent=2)}"


def parse_serialized(content: str) -> Optional[UserPreferences]:
    """Read a profile written by ``serialize``. Returns None when unreadable."""
    text = content.strip()
    if text.startswith(SERIALIZED_PREFIX):
        text = text[len(SERIALIZED_PREFIX):].strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return UserPreferences.from_dict(data)
    except PreferencesError:
        return None


def _format_list(values: list[str]) -> str:
    return ", ".join(values) if values else "(none)"


def render(profile: UserPreferences) -> str:
    """Render a profile for prompts and ``prefs show``."""
    return "\n".join([
        f"tone: {profile.tone}",
        f"reply_verbosity: {profile.reply_verbosity}",
        f"update_cadence: {profile.update_cadence}",
        f"max_risk_level: {profile.max_risk_level}",
        *(f"{name}: {_format_list(getattr(profile, name))}" for name in ID_LIST_FIELDS),
    ])


def is_critical_intent(intent: str) -> bool:
    return (
        any(token in intent for token in (
            "error", "failed", "blocked", "clarification", "question_answer",
            "status", "handoff", "teardown", "missing_plan",
        ))
        or intent.startswith("qa_")
        or intent.startswith("sandbox_")
    )


def should_post_update(profile: UserPreferences, intent: str) -> bool:
    """
    Decide whether an update with ``intent`` should be posted.

    Commands and status pings always post. High cadence posts everything;
    balanced mutes routine progress updates; low posts only critical ones.
    """
    normalized = intent.strip().lower()
    if not normalized:
        return True
    if normalized.startswith("command_") or normalized == "status_ping":
        return True
    if profile.update_cadence == "high":
        return True
    if profile.update_cadence == "balanced":
        return not (normalized in BALANCED_SUPPRESSED and not is_critical_intent(normalized))
    return is_critical_intent(normalized)

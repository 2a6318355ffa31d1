"""
Communication stage: compose a reply to a human comment.

The agent is asked for a JSON object describing the detected intent, its
confidence and a reply. Low-confidence or unparseable answers count as
strategy failures; exhausting the matrix falls back to a clarification
question instead of failing the ticket.
"""

from __future__ import annotations

import json
from typing import Any

from ticket_operator.errors import StageFailedError
from ticket_operator.models import StageKind, StageResult, StrategyAttempt
from ticket_operator.stages.base import StageExecutor, StrategyBody, StrategyContext


MIN_CONFIDENCE = 0.62
STATUS_REQUEST_MIN_CONFIDENCE = 0.7
STATUS_INTENTS = ("task_status_request", "status_update_request")

CLARIFICATION_REPLY = (
    "I don't have enough confidence to act on this yet. "
    "What exact outcome should I deliver here?"
)


def build_reply_prompt(stage_input: dict[str, Any], attachment_aware: bool) -> str:
    parts = [
        "You are replying to a teammate's comment on a ticket.",
        f"Ticket: {stage_input.get('issue_id', '')} {stage_input.get('title', '')}",
        f"Comment:\n{stage_input.get('body', '')}",
        f"Current run status:\n{json.dumps(stage_input.get('status') or {}, indent=2)}",
    ]
    preferences = stage_input.get("preferences_text")
    if preferences:
        parts.append(preferences)
    attachments = stage_input.get("attachments") or []
    if attachment_aware:
        listing = "\n".join(f"- {a}" for a in attachments) or "(none)"
        parts.append(f"Attachments on the ticket:\n{listing}\nUse them when answering.")
    parts.append(
        "Reply with JSON only: "
        '{"intent": "...", "confidence": 0.0, "needs_clarification": false, '
        '"clarification_question": null, "reply": "..."}'
    )
    return "\n\n".join(parts)


def parse_reply(text: str) -> dict[str, Any]:
    """
    Parse the agent's JSON answer.

    Raises:
        StageFailedError: With ``communication_intent_parse_failed`` when
            the answer is not a JSON object with a reply.
    """
    raw = text.strip()
    if raw.startswith("```"):
        raw = raw.strip("`")
        if raw.lower().startswith("json"):
            raw = raw[4:]
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StageFailedError(f"communication_intent_parse_failed: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("reply"), str):
        raise StageFailedError("communication_intent_parse_failed: missing reply")
    return data


class CommunicationExecutor(StageExecutor):
    """Composes replies for questions and status pings."""

    stage = StageKind.COMMUNICATION
    label = "Communication"

    def strategy_bodies(self) -> dict[str, StrategyBody]:
        return {
            "email-semantic": self._compose,
            "email-attachment-aware": self._compose,
        }

    def initial_strategy_id(self, stage_input: dict[str, Any]) -> str:
        if stage_input.get("attachments"):
            return "email-attachment-aware"
        return "email-semantic"

    def _compose(self, ctx: StrategyContext) -> dict[str, Any]:
        attachment_aware = ctx.strategy.family == "attachment"
        attachments = ctx.stage_input.get("attachments") or []
        text = self.invoke_tool(
            ctx.strategy.tool_id,
            f"reply-{ctx.strategy.id}",
            build_reply_prompt(ctx.stage_input, attachment_aware),
            ctx,
        ).text
        data = parse_reply(text)

        intent = str(data.get("intent") or "unknown")
        try:
            confidence = float(data.get("confidence", 0))
        except (TypeError, ValueError):
            confidence = 0.0
        direct_status = intent in STATUS_INTENTS and confidence >= STATUS_REQUEST_MIN_CONFIDENCE

        if (
            (data.get("needs_clarification") and not direct_status)
            or confidence < MIN_CONFIDENCE
            or intent == "unknown"
        ):
            question = data.get("clarification_question") or (
                "Confidence too low to execute safely with semantic strategy."
            )
            raise StageFailedError(f"[low_confidence] {question}")

        if intent == "attachment_request" and not attachments:
            raise StageFailedError(
                "[attachment_unavailable] Attachment request detected but no attachment "
                "payload was available."
            )

        return {
            "reply": data["reply"].strip(),
            "intent": intent,
            "confidence": confidence,
            "strategy_id": ctx.strategy.id,
            "clarification": False,
        }

    def exhausted(
        self,
        message: str,
        failures: list[StrategyAttempt],
        strategy_path: list[str],
        state: dict[str, Any],
    ) -> StageResult:
        self._log("communication_clarification_fallback", {
            "failure_kinds": [f.error_kind.value for f in failures],
        }, level="warn")
        return StageResult.success_result(
            {
                "reply": CLARIFICATION_REPLY,
                "intent": "unknown",
                "confidence": 0.0,
                "clarification": True,
                "failure_summary": message,
            },
            strategy_path=strategy_path,
            attempts=failures,
        )

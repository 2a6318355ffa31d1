"""
Ticket Orchestrator.

This module drives one ticket through its lifecycle:
1. Bootstrap: restore PR, sandbox and artifact references from the tracker
2. Discovery and planning (skipped when a plan already exists)
3. Coding and review inside a git worktree, then pull request creation
4. Front-end assessment, sandbox provisioning and automated QA
5. Smoke validation, handoff and sandbox teardown

The orchestrator is step-based. ``advance`` drains pending signals, runs
steps until the run has to wait, persists the run after every stage change,
and returns a Suspension telling the scheduler when to come back. Every
outbound side effect goes through the run's idempotency ledger, so
re-running a step after a crash does not repeat completed effects.
"""

from __future__ import annotations

import contextlib
import re
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from ticket_operator.commands import (
    Command,
    build_sandbox_marker,
    extract_pr_url,
    extract_sandbox_marker,
    is_status_ping,
    load_prefs_payload,
    looks_like_question,
    looks_like_smoke_fail,
    looks_like_smoke_pass,
    parse_command,
    parse_pr_url,
    parse_prefs_args,
)
from ticket_operator.collaborators import IssueInfo, PullRequestInfo
from ticket_operator.errors import StageExhaustedError
from ticket_operator.frontend import assess_frontend_task
from ticket_operator.models import (
    DEFAULT_STAGE_RATIONALE,
    ENGINE_STAGE_BY_TICKET_STAGE,
    CommentSignal,
    OrchestrationRun,
    PrEventSignal,
    RunMode,
    Signal,
    StageKind,
    StageResult,
    StrategyAttempt,
    TicketStage,
    TransitionRecord,
    WakeSignal,
    utc_now_iso,
)
from ticket_operator.preferences import (
    PreferencesError,
    UserPreferences,
    apply_patch,
    parse_patch,
    render as render_preferences,
    should_post_update,
)
from ticket_operator.stages.base import ExecutionHooks, StrategySwitch
from ticket_operator.workspace import WorktreeInfo

if TYPE_CHECKING:
    from ticket_operator.collaborators import (
        IssueTracker,
        LearningSink,
        PullRequestHost,
        QaRunner,
        SandboxProvider,
        StageRunner,
    )
    from ticket_operator.config import OrchestratorConfig
    from ticket_operator.logger import OperatorLogger
    from ticket_operator.state_store import IdempotencyLedger, RunStore
    from ticket_operator.workspace import GitWorkspace


# Bound on remembered comment and delivery ids per run
SEEN_ID_LIMIT = 500

PR_OPEN_ACTIONS = frozenset({"opened", "reopened", "synchronize", "ready_for_review"})

HELP_TEXT = "\n".join([
    "Commands (prefix with `/xena`, `@xena` or `xena`):",
    "- `help`: show this message",
    "- `status`: show the current stage and references",
    "- `stop`: pause the run",
    "- `continue`: resume a paused or blocked run",
    "- `restart`: start coding again from the current plan",
    "- `evaluate`: switch to analysis-only mode (one way)",
    "- `sandbox <url>`: provide a sandbox URL",
    "- `smoke pass` / `smoke fail`: report a manual smoke verdict",
    "- `prefs show|reset|set <json>`: manage update preferences",
])


@dataclass(frozen=True)
class Suspension:
    """Where the run stopped and when it wants to be advanced again."""

    kind: str  # "wait_signal", "timer", "done"
    stage: TicketStage
    wake_at: Optional[datetime] = None

    @property
    def done(self) -> bool:
        return self.kind == "done"


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def render_status(run: OrchestrationRun) -> str:
    """Human-readable status block used by status replies."""
    lines = [
        f"Stage: `{run.stage.value}` ({ENGINE_STAGE_BY_TICKET_STAGE[run.stage].value})",
        f"Mode: `{run.mode.value}`",
    ]
    if run.resume_stage:
        lines.append(f"Resume stage: `{run.resume_stage.value}`")
    if run.blocked_reason:
        lines.append(f"Blocked: {run.blocked_reason}")
    lines.append(f"Review attempts: {run.review_attempts}")
    lines.append(f"Smoke attempts: {run.smoke_attempts}")
    if run.pr_url:
        lines.append(f"PR: {run.pr_url}")
    if run.sandbox_url:
        lines.append(f"Sandbox: {run.sandbox_url}")
    if run.frontend_task is not None:
        lines.append(f"Front-end task: {run.frontend_task} ({run.frontend_reason})")
    return "\n".join(lines)


class TicketOrchestrator:
    """
    Durable state machine for one ticket.

    Owns the run exclusively. Signals are queued with ``enqueue`` and only
    processed inside ``advance``, strictly in arrival order.
    """

    def __init__(
        self,
        run: OrchestrationRun,
        store: RunStore,
        ledger: IdempotencyLedger,
        tracker: IssueTracker,
        pr_host: PullRequestHost,
        stage_runner: StageRunner,
        workspace: GitWorkspace,
        config: OrchestratorConfig,
        sandbox: Optional[SandboxProvider] = None,
        qa: Optional[QaRunner] = None,
        learning_sink: Optional[LearningSink] = None,
        logger: Optional[OperatorLogger] = None,
    ) -> None:
        self.run = run
        self._store = store
        self._ledger = ledger
        self._tracker = tracker
        self._pr_host = pr_host
        self._stage_runner = stage_runner
        self._workspace = workspace
        self._config = config
        self._sandbox = sandbox
        self._qa = qa
        self._learning_sink = learning_sink
        self._logger = logger
        self._pending: deque[Signal] = deque()
        self._issue: Optional[IssueInfo] = None
        self._smoke_check = re.compile(rf"\b{re.escape(config.smoke_check_name)}\b", re.IGNORECASE)

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    # =========================================================================
    # Public surface
    # =========================================================================

    def enqueue(self, signal: Signal) -> None:
        """Queue a signal for the next ``advance``."""
        self._pending.append(signal)

    def status(self) -> dict[str, Any]:
        return self.run.status_snapshot()

    def advance(self, now: Optional[datetime] = None) -> Suspension:
        """
        Process pending signals and run steps until the run must wait.

        Args:
            now: Current time, injectable for tests.

        Returns:
            Suspension describing why the run stopped.
        """
        now = _as_utc(now or datetime.now(timezone.utc))
        session = (
            self._logger.session_context(f"advance-{self.run.sequence:04d}")
            if self._logger else contextlib.nullcontext()
        )
        with session:
            try:
                if not self.run.bootstrapped:
                    self._bootstrap()
                while True:
                    self._drain_signals()
                    suspension = self._step(now)
                    if suspension is not None:
                        self._log("run_suspended", {
                            "kind": suspension.kind,
                            "stage": suspension.stage.value,
                            "wake_at": suspension.wake_at.isoformat() if suspension.wake_at else None,
                        }, level="debug")
                        return suspension
            except Exception as e:
                self._fail(e)
                return Suspension("done", self.run.stage)

    # =========================================================================
    # State helpers
    # =========================================================================

    def _save(self) -> None:
        self.run.updated_at = utc_now_iso()
        self._store.save(self.run)

    def _set_stage(
        self,
        stage: TicketStage,
        rationale: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        """Move the run to ``stage``, append a transition record and persist."""
        run = self.run
        engine_stage = ENGINE_STAGE_BY_TICKET_STAGE[stage]
        record = TransitionRecord(
            from_stage=run.stage.value,
            to_stage=stage.value,
            engine_stage=engine_stage.value,
            rationale=rationale or DEFAULT_STAGE_RATIONALE[stage],
            metadata={
                "workflow_stage": stage.value,
                "engine_stage": engine_stage.value,
                **metadata,
            },
        )
        run.transitions.append(record)
        overflow = len(run.transitions) - self._config.transition_log_limit
        if overflow > 0:
            del run.transitions[:overflow]
        run.stage = stage
        run.sequence += 1
        self._save()
        self._log("stage_transition", {
            "from": record.from_stage,
            "to": stage.value,
            "engine_stage": engine_stage.value,
            "rationale": record.rationale,
        })

    def _preferences(self) -> UserPreferences:
        return UserPreferences.from_dict(self.run.preferences)

    def _post(self, intent: str, body: str, key: Optional[str] = None) -> Optional[str]:
        """
        Post an update unless the preference cadence mutes it.

        Args:
            intent: Update category, used for cadence filtering.
            body: Comment text.
            key: Idempotency key. Defaults to the run sequence plus intent.

        Returns:
            The posted comment id, or None when muted.
        """
        if not should_post_update(self._preferences(), intent):
            self._log("update_muted", {"intent": intent}, level="debug")
            return None
        key = key or f"{self.run.sequence}:{intent}"
        issue_id = self.run.issue_id
        return self._ledger.run_once(
            f"post:{key}",
            lambda: self._tracker.post_update(issue_id, intent, body),
        )

    def _issue_info(self) -> IssueInfo:
        if self._issue is None:
            self._issue = self._tracker.get_issue(self.run.issue_id)
        return self._issue

    def _block(self, reason: str, resume_stage: TicketStage) -> None:
        run = self.run
        run.blocked_reason = reason
        run.resume_stage = resume_stage
        run.last_error = reason
        self._set_stage(TicketStage.BLOCKED, reason, resume_stage=resume_stage.value)
        self._post(
            "blocked_notice",
            f"Blocked: {reason}\n\nReply `xena continue` once this is resolved.",
        )

    def _fail(self, error: Exception) -> None:
        run = self.run
        run.last_error = str(error)
        self._log("run_failed", {"error": str(error), "stage": run.stage.value}, level="error")
        self._set_stage(TicketStage.FAILED, f"Unhandled error: {error}")
        try:
            self._post("workflow_failed", f"Run failed: {error}")
        except Exception as post_error:
            self._log("failure_notice_error", {"error": str(post_error)}, level="error")

    def _ledger_key(self, suffix: str) -> str:
        return f"{self.run.sequence}:{suffix}"

    # =========================================================================
    # Bootstrap
    # =========================================================================

    def _bootstrap(self) -> None:
        """Restore references from the tracker and announce the run."""
        run = self.run
        self._set_stage(TicketStage.STARTED, "Run bootstrapped.", mode=run.mode.value)
        issue = self._issue_info()

        last_pr_url: Optional[str] = None
        last_marker: Optional[dict[str, Any]] = None
        for comment in self._tracker.list_comments(run.issue_id):
            marker = extract_sandbox_marker(comment.body)
            if marker:
                last_marker = marker
            url = extract_pr_url(comment.body)
            if url:
                last_pr_url = url

        if last_pr_url and run.pr_number is None:
            repo, number = parse_pr_url(last_pr_url)
            run.pr_url = last_pr_url
            run.pr_number = number
            run.repo_full_name = run.repo_full_name or repo
        if last_marker and last_marker["pr_number"] == run.pr_number:
            run.sandbox_id = last_marker["sandbox_id"]
            run.sandbox_url = last_marker["sandbox_url"]
            run.sandbox_attempted_for_pr = run.pr_number
            run.repo_full_name = run.repo_full_name or last_marker["repo_full_name"]

        if not run.plan_markdown:
            run.plan_markdown = self._tracker.find_latest_artifact(run.issue_id, "plan")
        if not run.discovery_output:
            run.discovery_output = self._tracker.find_latest_artifact(run.issue_id, "discovery")

        run.bootstrapped = True
        self._log("run_bootstrapped", {
            "title": issue.title,
            "pr_number": run.pr_number,
            "has_plan": bool(run.plan_markdown),
            "has_discovery": bool(run.discovery_output),
        })

        if run.pr_number is not None:
            self._set_stage(TicketStage.WAITING_SMOKE, "Resumed from an existing pull request.")
            self._post(
                "resume_from_existing_pr",
                f"Picking this back up from the existing PR {run.pr_url}.",
            )
        elif run.mode == RunMode.EVALUATE_ONLY:
            self._set_stage(TicketStage.EVALUATING)
            self._post(
                "evaluate_mode_intro",
                "I'm in evaluate mode on this ticket: I'll answer questions but won't change code.",
            )
        else:
            self._post("ticket_take_ownership", f"Taking ownership of {run.issue_id}: {issue.title}.")

    # =========================================================================
    # Signals
    # =========================================================================

    def _remember(self, seen: list[str], value: str) -> None:
        seen.append(value)
        overflow = len(seen) - SEEN_ID_LIMIT
        if overflow > 0:
            del seen[:overflow]

    def _drain_signals(self) -> None:
        while self._pending:
            signal = self._pending.popleft()
            if signal.delivery_id:
                if signal.delivery_id in self.run.seen_delivery_ids:
                    self._log("signal_duplicate", {"delivery_id": signal.delivery_id}, level="debug")
                    continue
                self._remember(self.run.seen_delivery_ids, signal.delivery_id)
            if isinstance(signal, CommentSignal):
                self._handle_comment(signal)
            elif isinstance(signal, PrEventSignal):
                self._handle_pr_event(signal)
            elif isinstance(signal, WakeSignal):
                self._log("wake_received", level="debug")
            self._save()

    def _handle_pr_event(self, event: PrEventSignal) -> None:
        run = self.run
        if run.pr_number is not None and event.pr_number is not None and event.pr_number != run.pr_number:
            self._log("pr_event_ignored", {
                "reason": "different_pr",
                "pr_number": event.pr_number,
                "current_pr": run.pr_number,
            })
            return
        if run.pr_number is None and event.action not in PR_OPEN_ACTIONS:
            self._log("pr_event_ignored", {"reason": "no_current_pr", "action": event.action})
            return

        if event.pr_url:
            run.pr_url = event.pr_url
        if event.pr_number is not None:
            run.pr_number = event.pr_number
        if event.repo_full_name:
            run.repo_full_name = event.repo_full_name
        if event.branch_name:
            run.pr_head_branch = event.branch_name

        if event.action == "closed":
            run.pr_closed = True
        elif event.action in PR_OPEN_ACTIONS:
            run.pr_closed = False
        self._log("pr_event", {
            "action": event.action,
            "pr_number": run.pr_number,
            "merged": event.merged,
            "pr_closed": run.pr_closed,
        })

    def _handle_comment(self, comment: CommentSignal) -> None:
        run = self.run
        if comment.comment_id:
            if comment.comment_id in run.seen_comment_ids:
                self._log("comment_duplicate", {"comment_id": comment.comment_id}, level="debug")
                return
            self._remember(run.seen_comment_ids, comment.comment_id)

        key_base = comment.comment_id or comment.delivery_id or str(run.sequence)
        command = parse_command(comment.body)
        if command is not None:
            self._handle_command(command, key_base)
            return

        text = comment.body.strip()
        if is_status_ping(text):
            self._post("status_ping", render_status(run), key=f"status_ping:{key_base}")
            return
        if run.mode == RunMode.NORMAL:
            if looks_like_smoke_fail(text):
                self._manual_smoke_fail(text, key_base)
                return
            if looks_like_smoke_pass(text):
                self._manual_smoke_pass(key_base)
                return
        if looks_like_question(text):
            self._answer_question(comment, key_base)
            return
        self._log("comment_ignored", {"comment_id": comment.comment_id}, level="debug")

    def _answer_question(self, comment: CommentSignal, key_base: str) -> None:
        issue = self._issue_info()
        result = self._run_stage(StageKind.COMMUNICATION, {
            "issue_id": self.run.issue_id,
            "title": issue.title,
            "body": comment.body,
            "status": self.run.status_snapshot(),
            "preferences_text": f"Reply preferences:\n{render_preferences(self._preferences())}",
            "attachments": list(issue.attachments),
        })
        if not result.ok:
            self._post("question_answer_failed", f"I couldn't answer that: {result.reason}",
                       key=f"question_answer:{key_base}")
            return
        intent = "clarification_request" if result.payload.get("clarification") else "question_answer"
        self._post(intent, result.payload["reply"], key=f"question_answer:{key_base}")

    # =========================================================================
    # Commands
    # =========================================================================

    def _handle_command(self, command: Command, key_base: str) -> None:
        run = self.run
        self._log("command_received", {"command": command.name, "explicit": command.explicit})

        if run.mode == RunMode.EVALUATE_ONLY and command.execution_only:
            self._reply(
                key_base,
                "command_rejected_evaluate_only",
                f"`{command.name}` isn't available in evaluate mode.",
            )
            return

        handler: Optional[Callable[[Command, str], None]] = {
            "help": self._cmd_help,
            "status": self._cmd_status,
            "stop": self._cmd_stop,
            "continue": self._cmd_continue,
            "restart": self._cmd_restart,
            "evaluate": self._cmd_evaluate,
            "sandbox": self._cmd_sandbox,
            "smoke": self._cmd_smoke,
            "prefs": self._cmd_prefs,
            "preferences": self._cmd_prefs,
        }.get(command.name)
        if handler is None:
            self._reply(key_base, "command_unknown", f"I didn't understand `{command.name}`. Try `/xena help`.")
            return
        handler(command, key_base)

    def _reply(self, key_base: str, intent: str, body: str) -> None:
        self._post(intent, body, key=f"{intent}:{key_base}")

    def _cmd_help(self, command: Command, key_base: str) -> None:
        self._reply(key_base, "command_help", HELP_TEXT)

    def _cmd_status(self, command: Command, key_base: str) -> None:
        self._reply(key_base, "command_status", render_status(self.run))

    def _cmd_stop(self, command: Command, key_base: str) -> None:
        run = self.run
        if run.stage in (TicketStage.COMPLETED, TicketStage.FAILED):
            self._reply(key_base, "command_stop", f"Nothing to stop: the run is `{run.stage.value}`.")
            return
        if run.stage == TicketStage.BLOCKED:
            resume = run.resume_stage or TicketStage.STARTED
        else:
            resume = run.stage
        run.resume_stage = resume
        run.blocked_reason = "Paused by operator."
        self._set_stage(TicketStage.BLOCKED, "Paused by operator.", resume_stage=resume.value)
        self._reply(key_base, "command_stop", f"Paused. `xena continue` resumes at `{resume.value}`.")

    def _cmd_continue(self, command: Command, key_base: str) -> None:
        run = self.run
        if run.stage != TicketStage.BLOCKED:
            self._reply(key_base, "command_continue", f"Not blocked; currently `{run.stage.value}`.")
            return
        target = run.resume_stage or TicketStage.STARTED
        self._resume(target, "Resumed by operator.")
        self._reply(key_base, "command_continue", f"Resuming at `{target.value}`.")

    def _resume(self, target: TicketStage, rationale: str) -> None:
        run = self.run
        run.blocked_reason = None
        run.resume_stage = None
        self._set_stage(target, rationale)

    def _cmd_restart(self, command: Command, key_base: str) -> None:
        run = self.run
        run.review_attempts = 0
        run.smoke_attempts = 0
        self._reset_code_cycle()
        run.repo_full_name = None
        run.handoff_posted = False
        run.completed_at = None
        run.blocked_reason = None
        run.resume_stage = None
        run.last_error = None
        self._set_stage(TicketStage.CODING, "Restarted by operator.")
        self._reply(key_base, "command_restart", "Restarting from coding with the current plan.")

    def _cmd_evaluate(self, command: Command, key_base: str) -> None:
        run = self.run
        if run.mode == RunMode.EVALUATE_ONLY:
            self._reply(key_base, "command_evaluate", "Already in evaluate mode.")
            return
        run.mode = RunMode.EVALUATE_ONLY
        run.blocked_reason = None
        run.resume_stage = None
        self._set_stage(TicketStage.EVALUATING, "Switched to evaluate mode by operator.")
        self._reply(key_base, "command_evaluate", "Switched to evaluate mode. I'll answer questions but won't change code.")

    def _cmd_sandbox(self, command: Command, key_base: str) -> None:
        run = self.run
        url = command.args.split()[0] if command.args else ""
        if not re.match(r"^https?://", url):
            self._reply(key_base, "command_sandbox_invalid_url", "Usage: `xena sandbox https://...`")
            return
        run.sandbox_url = url
        self._save()
        self._reply(key_base, "command_sandbox_set", f"Sandbox set to {url}.")
        if run.stage == TicketStage.BLOCKED and run.resume_stage == TicketStage.WAITING_SANDBOX:
            self._resume(TicketStage.WAITING_SANDBOX, "Sandbox URL provided by operator.")

    def _cmd_smoke(self, command: Command, key_base: str) -> None:
        verdict = command.args.split()[0].lower() if command.args else ""
        if verdict == "pass":
            self._manual_smoke_pass(key_base)
        elif verdict == "fail":
            self._manual_smoke_fail(command.args, key_base)
        else:
            self._reply(key_base, "command_unknown", "Usage: `xena smoke pass` or `xena smoke fail`.")

    def _cmd_prefs(self, command: Command, key_base: str) -> None:
        run = self.run
        action = parse_prefs_args(command.args)
        if action.error:
            self._reply(key_base, "command_preferences_invalid", action.error)
            return
        if action.action == "show":
            self._reply(key_base, "command_preferences", render_preferences(self._preferences()))
            return
        if action.action == "reset":
            run.preferences = None
            self._save()
            self._reply(key_base, "command_preferences", "Preferences reset.\n" + render_preferences(self._preferences()))
            return
        try:
            patch = parse_patch(load_prefs_payload(action.raw_json or ""))
        except ValueError as e:
            self._reply(key_base, "command_preferences_invalid", f"Invalid JSON payload: {e}")
            return
        except PreferencesError as e:
            self._reply(key_base, "command_preferences_invalid", str(e))
            return
        updated = apply_patch(self._preferences(), patch)
        run.preferences = updated.to_dict()
        self._save()
        self._reply(key_base, "command_preferences", "Preferences updated.\n" + render_preferences(updated))

    # =========================================================================
    # Smoke accounting
    # =========================================================================

    def _manual_smoke_pass(self, key_base: str) -> None:
        self._post("smoke_pass_received", "Smoke pass noted, handing off.", key=f"smoke_pass:{key_base}")
        run = self.run
        run.blocked_reason = None
        run.resume_stage = None
        self._set_stage(TicketStage.HANDOFF, "Smoke passed (reported by operator).")

    def _manual_smoke_fail(self, detail: str, key_base: str) -> None:
        self.run.smoke_attempts += 1
        self._post(
            "smoke_failed_received",
            f"Smoke failure noted ({self.run.smoke_attempts}/{self._config.max_smoke_attempts}).",
            key=f"smoke_fail:{key_base}",
        )
        self._account_smoke_failure(f"Operator reported smoke failure: {detail}")

    def _reset_code_cycle(self) -> None:
        """Drop the PR and the branch behind it so the next coding pass cuts a new branch."""
        run = self.run
        run.reset_pr_references()
        run.worktree_path = None
        run.branch_name = None

    def _account_smoke_failure(self, feedback: str) -> None:
        """Loop back to coding, or block once the smoke budget is spent."""
        run = self.run
        limit = self._config.max_smoke_attempts
        run.last_error = feedback
        if run.smoke_attempts >= limit:
            self._block(
                f"Smoke failed {run.smoke_attempts} times ({limit} allowed). Human review required.",
                TicketStage.WAITING_SMOKE,
            )
            return
        self._reset_code_cycle()
        run.blocked_reason = None
        run.resume_stage = None
        self._set_stage(TicketStage.CODING, "Smoke failed; fixing on a new PR cycle.",
                        smoke_attempts=run.smoke_attempts)

    # =========================================================================
    # Stage execution
    # =========================================================================

    def _hooks(self, kind: StageKind) -> ExecutionHooks:
        def on_attempt_failed(attempt: StrategyAttempt) -> None:
            self._log("strategy_attempt_failed", {"stage": kind.value, **attempt.to_dict()}, level="warn")

        def on_strategy_switch(switch: StrategySwitch) -> None:
            self._post(
                f"{kind.value}_strategy_switch",
                f"{kind.value.capitalize()} is switching strategy "
                f"`{switch.from_strategy}` -> `{switch.to_strategy}` ({switch.attempt_label}). "
                f"{switch.reason}",
                key=self._ledger_key(f"{kind.value}_strategy_switch:{switch.attempt_label}"),
            )

        def on_heartbeat(tool_id: str, elapsed: float) -> None:
            self._log("tool_heartbeat", {"tool_id": tool_id, "elapsed_seconds": round(elapsed, 1)},
                      level="debug")

        return ExecutionHooks(
            on_attempt_failed=on_attempt_failed,
            on_strategy_switch=on_strategy_switch,
            on_heartbeat=on_heartbeat,
        )

    def _run_stage(self, kind: StageKind, stage_input: dict[str, Any]) -> StageResult:
        """Run a matrix stage and turn exhaustion into a failure result."""
        try:
            result = self._stage_runner.run_stage(kind, stage_input, self._hooks(kind))
        except StageExhaustedError as e:
            self._log("stage_exhausted", {"stage": kind.value, "attempts": len(e.attempts)}, level="warn")
            return StageResult.failure_result(str(e), attempts=e.attempts)
        if result.ok and result.learning is not None:
            self._record_learning(result)
        return result

    def _record_learning(self, result: StageResult) -> None:
        if self._learning_sink is None or result.learning is None:
            return
        try:
            self._learning_sink.record_learning(self.run.issue_id, result.learning)
        except Exception as e:
            self._log("learning_record_failed", {"error": str(e)}, level="warn")

    def _stage_input(self, **extra: Any) -> dict[str, Any]:
        issue = self._issue_info()
        return {
            "issue_id": self.run.issue_id,
            "title": issue.title,
            "description": issue.description,
            **extra,
        }

    def _discover(self) -> None:
        if self.run.stage != TicketStage.DISCOVERING:
            self._set_stage(TicketStage.DISCOVERING)
        self._post("discover_start", "Looking through the repository for relevant code.")
        result = self._run_stage(StageKind.DISCOVER, self._stage_input())
        if not result.ok:
            self._block(f"Discover failed: {result.reason}", TicketStage.DISCOVERING)
            return
        self.run.discovery_output = result.payload["discovery_output"]
        self._set_stage(TicketStage.PLANNING, "Discovery complete.",
                        strategy_id=result.payload.get("strategy_id"))

    def _plan(self) -> None:
        if self.run.stage != TicketStage.PLANNING:
            self._set_stage(TicketStage.PLANNING)
        self._post("plan_start", "Drafting an implementation plan.")
        result = self._run_stage(
            StageKind.PLAN,
            self._stage_input(discovery_output=self.run.discovery_output),
        )
        if not result.ok:
            self._block(f"Plan failed: {result.reason}", TicketStage.PLANNING)
            return
        self.run.plan_markdown = result.payload["plan_markdown"]
        self._post("plan_ready", f"Plan (quality {result.payload.get('quality_score')}):\n\n"
                                 f"{self.run.plan_markdown}")
        self._set_stage(TicketStage.CODING, "Plan accepted.",
                        quality_score=result.payload.get("quality_score"))

    def _code(self) -> None:
        run = self.run
        if run.stage != TicketStage.CODING:
            self._set_stage(TicketStage.CODING)
        existing = (
            WorktreeInfo(run.worktree_path, run.branch_name)
            if run.worktree_path and run.branch_name else None
        )
        worktree = self._workspace.prepare(run.issue_id, existing=existing)
        if worktree != existing:
            run.worktree_path = worktree.worktree_path
            run.branch_name = worktree.branch_name
            self._save()
            self._post("worktree_ready", f"Working on branch `{worktree.branch_name}`.",
                       key=f"worktree_ready:{worktree.branch_name}")

        self._post("code_start", "Implementing the plan.")
        code_input = self._stage_input(
            repo_path=worktree.worktree_path,
            plan_markdown=run.plan_markdown,
            feedback=run.last_error if run.smoke_attempts else None,
        )
        result = self._run_stage(StageKind.CODE, code_input)
        if not result.ok:
            self._block(f"Code failed: {result.reason}", TicketStage.CODING)
            return

        review = self._run_stage(StageKind.REVIEW, self._stage_input(
            repo_path=worktree.worktree_path,
            plan_markdown=run.plan_markdown,
        ))
        run.review_attempts += int(review.payload.get("revision_attempts", 0))
        if not review.ok:
            self._block(review.reason, TicketStage.CODING)
            return
        self._set_stage(TicketStage.CREATING_PR, "Review passed.",
                        review_attempts=run.review_attempts)

    def _create_pr(self) -> None:
        run = self.run
        issue = self._issue_info()
        title = f"{run.issue_id}: {issue.title}"
        worktree_path = run.worktree_path or ""
        branch_name = run.branch_name or ""
        try:
            self._ledger.run_once(
                self._ledger_key(f"push:{branch_name}"),
                lambda: self._pr_host.commit_and_push(worktree_path, branch_name, title),
            )
            data = self._ledger.run_once(
                self._ledger_key(f"create_pr:{branch_name}"),
                lambda: asdict(self._pr_host.create_pull_request(
                    branch_name,
                    title,
                    f"Resolves {run.issue_id}.\n\n{run.plan_markdown or ''}",
                )),
            )
            pr = PullRequestInfo(**data)
        except Exception as e:
            self._log("pr_creation_failed", {"error": str(e)}, level="error")
            self._block(f"PR creation failed: {e}", TicketStage.CREATING_PR)
            return

        run.reset_pr_references()
        run.pr_url = pr.url
        run.pr_number = pr.number
        run.repo_full_name = pr.repo_full_name
        run.pr_head_branch = pr.head_branch
        run.handoff_posted = False
        self._post("pr_created", f"Opened {pr.url}")
        self._set_stage(TicketStage.WAITING_SMOKE, "Pull request opened.", pr_number=pr.number)

    # =========================================================================
    # Validation
    # =========================================================================

    def _maybe_assess_frontend(self) -> None:
        run = self.run
        if run.frontend_assessed_for_pr == run.pr_number or not run.repo_full_name:
            return
        issue = self._issue_info()
        changed = self._pr_host.changed_files(run.repo_full_name, run.pr_number)  # type: ignore[arg-type]
        assessment = assess_frontend_task(
            issue.labels,
            issue.title,
            issue.description,
            changed,
            self._config.frontend_score_threshold,
        )
        run.frontend_task = assessment.frontend
        run.frontend_reason = assessment.reason
        run.frontend_assessed_for_pr = run.pr_number
        self._save()
        self._log("frontend_assessed", {"frontend": assessment.frontend, "reason": assessment.reason})

    def _maybe_provision_sandbox(self) -> None:
        run = self.run
        if (
            self._sandbox is None
            or not run.frontend_task
            or run.pr_number is None
            or not run.repo_full_name
            or not run.pr_head_branch
            or run.sandbox_url
            or run.sandbox_attempted_for_pr == run.pr_number
        ):
            return
        run.sandbox_attempted_for_pr = run.pr_number
        self._set_stage(TicketStage.WAITING_SANDBOX, "Front-end change; provisioning a sandbox.")
        try:
            outcome = self._sandbox.provision(run.issue_id, run.pr_number, run.pr_head_branch)
        except Exception as e:
            self._log("sandbox_provision_failed", {"error": str(e)}, level="warn")
            self._post("sandbox_provision_failed", f"Sandbox provisioning failed: {e}")
            outcome = None
        else:
            if outcome is None:
                self._log("sandbox_provision_skipped", {"pr_number": run.pr_number})

        if outcome is not None and outcome.sandbox_id:
            run.sandbox_id = outcome.sandbox_id
            run.sandbox_url = outcome.url
            run.sandbox_torn_down = False
            marker = build_sandbox_marker(
                outcome.sandbox_id, outcome.url or "", run.pr_number, run.repo_full_name
            )
            self._post("sandbox_ready", f"Sandbox ready: {outcome.url}\n{marker}")
        self._set_stage(TicketStage.WAITING_SMOKE)

    def _maybe_run_qa(self) -> bool:
        """Run automated QA once per PR. Returns True when the stage changed."""
        run = self.run
        if self._qa is None or not run.sandbox_url or run.auto_qa_run_for_pr == run.pr_number:
            return False
        run.auto_qa_run_for_pr = run.pr_number
        self._save()
        try:
            outcome = self._qa.run_qa(run.issue_id, run.sandbox_url)
        except Exception as e:
            self._log("qa_error", {"error": str(e)}, level="warn")
            self._post("qa_error", f"Automated QA could not run: {e}")
            return False
        if outcome is None:
            self._log("qa_skipped", {"pr_number": run.pr_number})
            return False
        if outcome.passed:
            self._post("qa_passed", f"Automated QA passed. {outcome.summary}".strip())
            self._set_stage(TicketStage.HANDOFF, "Automated QA passed.")
            return True
        run.smoke_attempts += 1
        self._post("qa_failed", f"Automated QA failed: {outcome.summary}")
        self._account_smoke_failure(f"Automated QA failed: {outcome.summary}")
        return True

    def _poll_smoke(self, now: datetime) -> Optional[Suspension]:
        run = self.run
        if run.pr_number is None or not run.repo_full_name:
            return Suspension("wait_signal", run.stage)
        checks = self._pr_host.poll_checks(run.repo_full_name, run.pr_number)
        verdict = None
        for check in checks:
            if self._smoke_check.search(check.name) and check.status.upper() == "COMPLETED":
                verdict = (check.conclusion or "").upper()
                break
        if verdict == "SUCCESS":
            self._set_stage(TicketStage.HANDOFF, "Smoke check passed.")
            return None
        if verdict == "FAILURE":
            run.smoke_attempts += 1
            self._post(
                "ci_smoke_failed",
                f"Smoke check failed ({run.smoke_attempts}/{self._config.max_smoke_attempts}).",
            )
            self._account_smoke_failure(f"CI smoke check failed on PR #{run.pr_number}.")
            return None
        wake_at = now + timedelta(seconds=self._config.smoke_poll_interval_seconds)
        return Suspension("timer", run.stage, wake_at)

    def _teardown(self) -> None:
        run = self.run
        sandbox_id = run.sandbox_id or ""
        self._set_stage(TicketStage.TEARING_DOWN, "Pull request closed; releasing the sandbox.")
        self._ledger.record(f"teardown_attempted:{sandbox_id}")
        if self._sandbox is None:
            self._log("sandbox_teardown_skipped", {"sandbox_id": sandbox_id}, level="warn")
            return
        try:
            self._ledger.run_once(f"teardown:{sandbox_id}", lambda: self._sandbox.teardown(sandbox_id))
        except Exception as e:
            self._log("sandbox_teardown_failed", {"error": str(e)}, level="error")
            self._post("sandbox_teardown_failed", f"Sandbox teardown failed: {e}")
            return
        run.sandbox_torn_down = True
        self._post("sandbox_teardown_success", "Sandbox torn down.")

    # =========================================================================
    # Step
    # =========================================================================

    def _step(self, now: datetime) -> Optional[Suspension]:
        """
        Run one unit of work.

        Returns:
            None when the run moved and should be stepped again, or a
            Suspension when it has to wait.
        """
        run = self.run

        if run.stage == TicketStage.FAILED:
            return Suspension("done", run.stage)

        if run.pr_closed:
            if (
                run.sandbox_id
                and not run.sandbox_torn_down
                and not self._ledger.seen(f"teardown_attempted:{run.sandbox_id}")
            ):
                self._teardown()
            if run.stage != TicketStage.COMPLETED:
                run.completed_at = run.completed_at or utc_now_iso()
                self._set_stage(TicketStage.COMPLETED, "Pull request closed.")
            return Suspension("done", run.stage)

        if run.stage == TicketStage.BLOCKED:
            return Suspension("wait_signal", run.stage)

        if run.stage == TicketStage.COMPLETED:
            if run.sandbox_id and not run.sandbox_torn_down:
                completed_at = _parse_iso(run.completed_at) or now
                deadline = completed_at + timedelta(hours=self._config.teardown_linger_hours)
                if now >= deadline:
                    self._log("teardown_linger_expired", {"sandbox_id": run.sandbox_id})
                    run.pr_closed = True
                    self._save()
                    return None
                return Suspension("timer", run.stage, deadline)
            return Suspension("done", run.stage)

        if run.mode == RunMode.EVALUATE_ONLY:
            if run.stage != TicketStage.EVALUATING:
                self._set_stage(TicketStage.EVALUATING)
            return Suspension("wait_signal", run.stage)

        if run.stage == TicketStage.HANDOFF:
            if not run.handoff_posted:
                self._post("handoff", f"Validated and ready for review: {run.pr_url or run.branch_name}")
                run.handoff_posted = True
            run.completed_at = utc_now_iso()
            self._set_stage(TicketStage.COMPLETED, "Handed off.")
            return None

        if run.pr_number is not None and run.stage in (
            TicketStage.STARTED,
            TicketStage.WAITING_SANDBOX,
            TicketStage.WAITING_SMOKE,
        ):
            if run.stage == TicketStage.STARTED:
                self._set_stage(TicketStage.WAITING_SMOKE)
            self._maybe_assess_frontend()
            self._maybe_provision_sandbox()
            if self._maybe_run_qa():
                return None
            if run.stage == TicketStage.WAITING_SANDBOX:
                self._set_stage(TicketStage.WAITING_SMOKE)
            return self._poll_smoke(now)

        if run.stage in (TicketStage.WAITING_SMOKE, TicketStage.WAITING_SANDBOX):
            # Waiting on a human verdict with no PR to poll
            return Suspension("wait_signal", run.stage)

        if run.stage == TicketStage.CREATING_PR and run.worktree_path and run.branch_name:
            self._create_pr()
            return None

        if not run.plan_markdown:
            if not run.discovery_output:
                self._discover()
            else:
                self._plan()
            return None

        self._code()
        return None

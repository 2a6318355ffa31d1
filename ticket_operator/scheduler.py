"""
Operator scheduler.

Owns one TicketOrchestrator per issue id and re-enters them:
- on inbound signals (``dispatch`` and ``ingest``)
- when a timer a run asked for comes due (``tick``)

Each run advances under its own lock, so one run never executes two steps
at once while different runs proceed independently. With a lock directory
the same holds across processes through a file lock per issue.
"""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from filelock import FileLock, Timeout

from ticket_operator.errors import OperatorError
from ticket_operator.models import OrchestrationRun, RunMode, Signal
from ticket_operator.orchestrator import Suspension, TicketOrchestrator
from ticket_operator.route_cache import RouteCache
from ticket_operator.routing import RoutingError, SignalRoute, build_signal, load_signal_routes

if TYPE_CHECKING:
    from ticket_operator.config import OperatorConfig
    from ticket_operator.logger import OperatorLogger
    from ticket_operator.state_store import RunStore


OrchestratorFactory = Callable[[OrchestrationRun], TicketOrchestrator]


class RunBusyError(OperatorError):
    """Raised when another process holds the run lock past the timeout."""
    pass


def _lock_name(issue_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", issue_id) + ".lock"


class OperatorScheduler:
    """
    Routes signals to per-issue orchestrators and honours their timers.

    Args:
        store: Run store used to load existing runs and read status.
        factory: Builds an orchestrator around a loaded or new run.
        routes: Optional cache of the inbound event route table.
        logger: Optional scheduler-level logger.
        lock_dir: When set, each advance also holds a file lock per issue so
            separate processes never advance the same run at once.
        lock_timeout: Seconds to wait for another process to release a run.
    """

    def __init__(
        self,
        store: RunStore,
        factory: OrchestratorFactory,
        routes: Optional[RouteCache[dict[str, SignalRoute]]] = None,
        logger: Optional[OperatorLogger] = None,
        lock_dir: Optional[str | Path] = None,
        lock_timeout: float = 30.0,
    ) -> None:
        self._store = store
        self._factory = factory
        self._routes = routes
        self._logger = logger
        self._orchestrators: dict[str, TicketOrchestrator] = {}
        self._run_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._timers: dict[str, datetime] = {}
        self._lock_dir = Path(lock_dir) if lock_dir is not None else None
        self._lock_timeout = lock_timeout

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _lock_for(self, issue_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._run_locks.setdefault(issue_id, threading.Lock())

    @contextmanager
    def _run_lock(self, issue_id: str) -> Iterator[None]:
        """
        Hold the in-process lock of a run, plus its file lock when configured.

        Raises:
            RunBusyError: If another process keeps the file lock past the timeout.
        """
        with self._lock_for(issue_id):
            if self._lock_dir is None:
                yield
                return
            self._lock_dir.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(self._lock_dir / _lock_name(issue_id)), timeout=self._lock_timeout)
            try:
                lock.acquire()
            except Timeout:
                self._log("run_lock_timeout", {
                    "issue_id": issue_id,
                    "timeout": self._lock_timeout,
                }, level="warn")
                raise RunBusyError(
                    f"Run {issue_id} is being advanced by another process "
                    f"(waited {self._lock_timeout}s)"
                )
            try:
                yield
            finally:
                lock.release()

    def _orchestrator(self, issue_id: str, mode: RunMode = RunMode.NORMAL) -> TicketOrchestrator:
        """Get the orchestrator for an issue, loading or creating its run. Caller holds the run lock."""
        orchestrator = self._orchestrators.get(issue_id)
        if orchestrator is not None and self._lock_dir is not None:
            # Another process may have advanced the run since it was cached
            persisted = self._store.load(issue_id)
            if persisted is not None and persisted.updated_at != orchestrator.run.updated_at:
                self._log("run_reloaded", {"issue_id": issue_id}, level="debug")
                orchestrator = None
        if orchestrator is None:
            run = self._store.load(issue_id)
            if run is None:
                run = OrchestrationRun(issue_id=issue_id, mode=mode)
                self._store.save(run)
                self._log("run_created", {"issue_id": issue_id, "mode": mode.value})
            orchestrator = self._factory(run)
            with self._registry_lock:
                self._orchestrators[issue_id] = orchestrator
        return orchestrator

    def _record(self, issue_id: str, suspension: Suspension) -> Suspension:
        with self._registry_lock:
            if suspension.kind == "timer" and suspension.wake_at is not None:
                self._timers[issue_id] = suspension.wake_at
            else:
                self._timers.pop(issue_id, None)
        return suspension

    def start(
        self,
        issue_id: str,
        mode: RunMode = RunMode.NORMAL,
        now: Optional[datetime] = None,
    ) -> Suspension:
        """Create the run if needed and advance it."""
        with self._run_lock(issue_id):
            orchestrator = self._orchestrator(issue_id, mode)
            return self._record(issue_id, orchestrator.advance(now))

    def dispatch(self, signal: Signal, now: Optional[datetime] = None) -> Optional[Suspension]:
        """
        Deliver a signal to its run and advance the run.

        Returns:
            The run's suspension, or None when the delivery was a duplicate.
        """
        with self._run_lock(signal.issue_id):
            orchestrator = self._orchestrator(signal.issue_id)
            if signal.delivery_id and signal.delivery_id in orchestrator.run.seen_delivery_ids:
                self._log("signal_duplicate", {
                    "issue_id": signal.issue_id,
                    "delivery_id": signal.delivery_id,
                }, level="debug")
                return None
            orchestrator.enqueue(signal)
            return self._record(signal.issue_id, orchestrator.advance(now))

    def ingest(
        self,
        event_type: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Optional[Suspension]:
        """
        Route a raw external event through the route table and dispatch it.

        Raises:
            RoutingError: If no route table is configured or the event has no route.
        """
        if self._routes is None:
            raise RoutingError("No route table configured")
        routes = self._routes.get()
        route = routes.get(event_type.strip().lower())
        if route is None:
            raise RoutingError(
                f"No route for event type {event_type} "
                f"(supported: {', '.join(sorted(routes)) or 'none'})"
            )
        return self.dispatch(build_signal(route, payload), now)

    def due(self, now: Optional[datetime] = None) -> list[str]:
        """Issue ids whose timers have come due, earliest first."""
        now = now or datetime.now(timezone.utc)
        with self._registry_lock:
            ready = [(at, issue_id) for issue_id, at in self._timers.items() if at <= now]
        return [issue_id for _, issue_id in sorted(ready)]

    def next_wake(self) -> Optional[datetime]:
        with self._registry_lock:
            return min(self._timers.values()) if self._timers else None

    def tick(self, now: Optional[datetime] = None) -> dict[str, Suspension]:
        """Advance every run whose timer is due."""
        now = now or datetime.now(timezone.utc)
        results = {}
        for issue_id in self.due(now):
            with self._run_lock(issue_id):
                orchestrator = self._orchestrator(issue_id)
                results[issue_id] = self._record(issue_id, orchestrator.advance(now))
        return results

    def get_status(self, issue_id: str) -> Optional[dict[str, Any]]:
        """
        Latest committed status of a run, without taking the run lock.

        Reads the persisted state, which is written atomically after every
        stage change.
        """
        run = self._store.load(issue_id)
        return run.status_snapshot() if run is not None else None


def build_scheduler(
    config: OperatorConfig,
    tracker: Any = None,
    pr_host: Any = None,
    sandbox: Any = None,
    qa: Any = None,
) -> OperatorScheduler:
    """
    Wire a scheduler with the default collaborators.

    Local file tracker, gh-based PR host, CLI tool adapters, git worktrees
    and the learning registry, unless replacements are passed in.
    """
    from ticket_operator.adapters import build_default_registry
    from ticket_operator.integrations import GhPullRequestHost, LocalIssueTracker
    from ticket_operator.learning import LearningRegistry
    from ticket_operator.logger import get_logger
    from ticket_operator.stages.runner import ExecutorStageRunner
    from ticket_operator.state_store import IdempotencyLedger, RunStore
    from ticket_operator.strategy.policy import load_matrix_policies
    from ticket_operator.workspace import GitWorkspace

    operator_logger = get_logger("operator", config)
    store = RunStore(config, operator_logger)
    policies = load_matrix_policies(config.resolved_policy_path)
    registry = build_default_registry(config, operator_logger)
    workspace = GitWorkspace(config.repo_path, config.worktrees_path, operator_logger)
    stage_runner = ExecutorStageRunner(policies, registry, workspace, operator_logger)
    learning = LearningRegistry(config.learning_path, operator_logger)
    tracker = tracker or LocalIssueTracker(config.issues_path, operator_logger)
    pr_host = pr_host or GhPullRequestHost(config.repo_path, logger=operator_logger)
    routes_path = config.resolved_routes_path
    routes = RouteCache(
        lambda: load_signal_routes(routes_path),
        ttl_seconds=config.route_cache.ttl_seconds,
        logger=operator_logger,
    )

    def factory(run: OrchestrationRun) -> TicketOrchestrator:
        return TicketOrchestrator(
            run=run,
            store=store,
            ledger=IdempotencyLedger(config.ledger_path, run.issue_id, operator_logger),
            tracker=tracker,
            pr_host=pr_host,
            stage_runner=stage_runner,
            workspace=workspace,
            config=config.orchestrator,
            sandbox=sandbox,
            qa=qa,
            learning_sink=learning,
            logger=get_logger(run.issue_id, config),
        )

    return OperatorScheduler(store, factory, routes, operator_logger, lock_dir=config.locks_path)

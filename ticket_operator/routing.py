"""Inbound event routing: map external event types to run signals."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ticket_operator.config import DEFAULT_ROUTES_PATH
from ticket_operator.errors import OperatorError
from ticket_operator.models import CommentSignal, PrEventSignal, Signal, WakeSignal


SIGNAL_KINDS = ("comment", "pr_event", "wake")


class RoutingError(OperatorError):
    """Raised when the route table is invalid or an event has no route."""
    pass


@dataclass(frozen=True)
class SignalRoute:
    event_type: str
    signal: str
    enabled: bool = True


def parse_signal_routes(data: Any) -> dict[str, SignalRoute]:
    """
    Validate a route table document.

    Raises:
        RoutingError: Naming the offending entry.
    """
    if not isinstance(data, dict) or not isinstance(data.get("routes"), list):
        raise RoutingError("Route table must contain a 'routes' list")
    if not data["routes"]:
        raise RoutingError("Route table must contain at least one route")

    routes: dict[str, SignalRoute] = {}
    for index, raw in enumerate(data["routes"]):
        if not isinstance(raw, dict):
            raise RoutingError(f"routes[{index}] must be a mapping")
        event_type = raw.get("event_type")
        if not isinstance(event_type, str) or not event_type.strip():
            raise RoutingError(f"routes[{index}] missing event_type")
        signal = raw.get("signal")
        if signal not in SIGNAL_KINDS:
            raise RoutingError(
                f"routes[{index}] has invalid signal: {signal} "
                f"(expected one of {', '.join(SIGNAL_KINDS)})"
            )
        normalized = event_type.strip().lower()
        if normalized in routes:
            raise RoutingError(f"routes[{index}] duplicates event_type {normalized}")
        routes[normalized] = SignalRoute(
            event_type=normalized,
            signal=signal,
            enabled=bool(raw.get("enabled", True)),
        )
    return routes


def load_signal_routes(path: str | Path = DEFAULT_ROUTES_PATH) -> dict[str, SignalRoute]:
    path = Path(path)
    if not path.exists():
        raise RoutingError(f"Route table not found: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise RoutingError(f"Invalid YAML in route table: {e}")
    return parse_signal_routes(data)


def build_signal(route: SignalRoute, payload: dict[str, Any]) -> Signal:
    """
    Turn an event payload into the signal its route names.

    Raises:
        RoutingError: If the route is disabled or the payload has no issue id.
    """
    if not route.enabled:
        raise RoutingError(f"Route for {route.event_type} is disabled")
    if not payload.get("issue_id"):
        raise RoutingError(f"{route.event_type} payload is missing issue_id")
    if route.signal == "comment":
        return CommentSignal.from_dict(payload)
    if route.signal == "pr_event":
        return PrEventSignal.from_dict(payload)
    return WakeSignal(issue_id=payload["issue_id"], delivery_id=payload.get("delivery_id"))

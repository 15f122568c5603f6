from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Union

from ngo_access.observability import incr_metric, log_event


@dataclass(frozen=True)
class RoleChanged:
    previous_role: str | None
    new_role: str
    user_id: str | None = None


@dataclass(frozen=True)
class PermissionsChanged:
    action: str  # update | role_change | seed | reset | refresh
    role: str | None = None
    permission_id: str | None = None
    granted: bool | None = None
    permissions_count: int | None = None
    scope: str | None = None


PermissionEvent = Union[RoleChanged, PermissionsChanged]
Listener = Callable[[PermissionEvent], None]


class PermissionEvents:
    """Synchronous broadcast to subscribers, in subscription order.

    A listener that raises is logged and skipped; the rest still receive the event.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: PermissionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                incr_metric("permissions.events.listener_failed", event=type(event).__name__)
                log_event(
                    "permission_listener_failed",
                    level=logging.WARNING,
                    event_type=type(event).__name__,
                    error=str(exc),
                )

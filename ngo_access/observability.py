from __future__ import annotations

import json
import logging
from collections import Counter
from contextvars import ContextVar, Token
from threading import Lock
from typing import Any


logger = logging.getLogger("ngo_access")

# Set per request by the HTTP middleware. asyncio.to_thread copies the
# context, so store calls made in worker threads log the same id.
_current_request_id: ContextVar[str | None] = ContextVar("ngo_access_request_id", default=None)

_counter_lock = Lock()
_counters: Counter[str] = Counter()


def bind_request_id(request_id: str | None) -> Token:
    return _current_request_id.set(request_id)


def release_request_id(token: Token) -> None:
    _current_request_id.reset(token)


def current_request_id() -> str | None:
    return _current_request_id.get()


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    # Enums (policy, resolution state) log as their value.
    return str(getattr(value, "value", value))


def metric_key(name: str, **labels: Any) -> str:
    """``name|k1=v1,k2=v2`` with labels sorted, or the bare name."""
    if not labels:
        return name
    return name + "|" + ",".join(f"{k}={labels[k]}" for k in sorted(labels))


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{k: _jsonable(v) for k, v in labels.items()})
    with _counter_lock:
        _counters[key] += value


def metrics_snapshot(prefix: str | None = None) -> dict[str, int]:
    with _counter_lock:
        if prefix is None:
            return dict(_counters)
        return {k: v for k, v in _counters.items() if k.startswith(prefix)}


def reset_metrics() -> None:
    with _counter_lock:
        _counters.clear()


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    **fields: Any,
) -> None:
    payload: dict[str, Any] = {"event": event}
    request_id = request_id or current_request_id()
    if request_id:
        payload["request_id"] = request_id
    payload.update((key, _jsonable(value)) for key, value in fields.items())
    logger.log(level, json.dumps(payload, sort_keys=True))

from __future__ import annotations

import time
from typing import Any, Callable, Final, Generic, TypeVar

T = TypeVar("T")

ROLE_MIRROR_KEY: Final[str] = "temp_user_role"
ADMIN_VERIFIED_KEY: Final[str] = "admin_verified"


class _Miss:
    _instance: "_Miss | None" = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS: Final[_Miss] = _Miss()


class TTLCache(Generic[T]):
    """Single-entry cache that expires a fixed time after capture.

    A write can carry ``fetched_at``, the clock reading taken when the fetch
    that produced the value started. Such a write is dropped when the cache
    was invalidated after that moment or already holds a value from a fetch
    that started later, so a slow response never replaces newer data.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: T | _Miss = MISS
        self._captured_at: float | None = None
        self._fetch_started_at: float | None = None
        self._invalidated_at: float | None = None

    def now(self) -> float:
        return self._clock()

    def get(self) -> T | _Miss:
        if self._captured_at is None:
            return MISS
        if self._clock() - self._captured_at >= self.ttl_seconds:
            return MISS
        return self._value

    def set(self, value: T, *, fetched_at: float | None = None) -> bool:
        if fetched_at is not None:
            if self._invalidated_at is not None and fetched_at < self._invalidated_at:
                return False
            if self._fetch_started_at is not None and fetched_at < self._fetch_started_at:
                return False
        self._value = value
        self._captured_at = self._clock()
        self._fetch_started_at = fetched_at if fetched_at is not None else self._captured_at
        return True

    def invalidate(self) -> None:
        self._value = MISS
        self._captured_at = None
        self._fetch_started_at = None
        self._invalidated_at = self._clock()

    def age(self) -> float | None:
        if self._captured_at is None:
            return None
        return self._clock() - self._captured_at

    @property
    def has_entry(self) -> bool:
        return self._captured_at is not None

    @property
    def is_stale(self) -> bool:
        return self.has_entry and self.get() is MISS


class SessionMirror:
    """Per-session key/value mirror. Last write wins."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        value = self._values.get(key)
        if value in (None, "", "null", "undefined"):
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._values[key] = str(value)

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    @property
    def role(self) -> str | None:
        return self.get(ROLE_MIRROR_KEY)

    @role.setter
    def role(self, value: str | None) -> None:
        if value is None:
            self.remove(ROLE_MIRROR_KEY)
        else:
            self.set(ROLE_MIRROR_KEY, value)

    @property
    def admin_verified(self) -> bool:
        return self.get(ADMIN_VERIFIED_KEY) == "true"

    @admin_verified.setter
    def admin_verified(self, value: bool) -> None:
        if value:
            self.set(ADMIN_VERIFIED_KEY, "true")
        else:
            self.remove(ADMIN_VERIFIED_KEY)

    def clear(self) -> None:
        self._values.clear()

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import time
from typing import Any, Callable, Mapping, Optional


class SlidingWindowLimiter:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)

    def _trim(self, events: deque[float], window_start: float) -> None:
        while events and events[0] < window_start:
            events.popleft()

    def allow(self, key: str, max_events: int, period_seconds: float) -> bool:
        now = self._clock()
        events = self._events[key]
        self._trim(events, now - period_seconds)

        if len(events) >= max_events:
            return False

        events.append(now)
        return True

    def count(self, key: str, period_seconds: float) -> int:
        events = self._events.get(key)
        if not events:
            return 0
        self._trim(events, self._clock() - period_seconds)
        return len(events)

    def prune(self, max_age_seconds: float) -> int:
        """Drop keys whose newest event is older than ``max_age_seconds``."""
        cutoff = self._clock() - max_age_seconds
        stale = [key for key, events in list(self._events.items()) if not events or events[-1] < cutoff]
        for key in stale:
            del self._events[key]
        return len(stale)


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    rule: RateLimitRule
    attempts: int

    @property
    def remaining(self) -> int:
        return max(0, self.rule.max_requests - self.attempts)


class EndpointRateLimiter:
    """Per ip and endpoint limits, with overrides for specific paths."""

    def __init__(
        self,
        default_rule: RateLimitRule,
        endpoint_rules: Optional[Mapping[str, RateLimitRule]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_rule = default_rule
        self.endpoint_rules = dict(endpoint_rules or {})
        self._limiter = SlidingWindowLimiter(clock=clock)

    @classmethod
    def from_settings(cls, settings: Any, clock: Callable[[], float] = time.time) -> "EndpointRateLimiter":
        return cls(
            RateLimitRule(settings.rate_limit_requests, settings.rate_limit_window_seconds),
            {
                path: RateLimitRule(max_requests, window_seconds)
                for path, (max_requests, window_seconds) in settings.endpoint_rate_limits.items()
            },
            clock=clock,
        )

    def rule_for(self, path: str) -> RateLimitRule:
        return self.endpoint_rules.get(path, self.default_rule)

    def check(self, ip: str, path: str) -> RateLimitDecision:
        rule = self.rule_for(path)
        key = f"{ip}:{path}"
        allowed = self._limiter.allow(key, rule.max_requests, rule.window_seconds)
        attempts = self._limiter.count(key, rule.window_seconds)
        return RateLimitDecision(allowed=allowed, rule=rule, attempts=attempts)

    def prune(self) -> None:
        longest = max(
            [self.default_rule.window_seconds, *(rule.window_seconds for rule in self.endpoint_rules.values())]
        )
        self._limiter.prune(longest)

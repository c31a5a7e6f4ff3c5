from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
import threading
import time
from typing import Any, Callable, Iterable, Mapping, Optional

from .metrics import ACTIVE_BLOCKS, BLOCKS_TOTAL, SECURITY_ALERTS_TOTAL, SECURITY_EVENTS_TOTAL

logger = logging.getLogger("squadguard.security")


class EventKind(str, Enum):
    SQL_INJECTION = "sql_injection"
    XSS = "xss"
    RATE_LIMIT = "rate_limit"
    INVALID_INPUT = "invalid_input"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UnknownEventKind(ValueError):
    def __init__(self, kind: object) -> None:
        super().__init__(f"Unknown security event kind: {kind!r}")
        self.kind = kind


@dataclass(frozen=True)
class EventThreshold:
    max_attempts: int
    window_seconds: float
    severity: Severity


DEFAULT_THRESHOLDS: dict[EventKind, EventThreshold] = {
    EventKind.SQL_INJECTION: EventThreshold(max_attempts=3, window_seconds=5 * 60, severity=Severity.HIGH),
    EventKind.XSS: EventThreshold(max_attempts=3, window_seconds=5 * 60, severity=Severity.HIGH),
    EventKind.RATE_LIMIT: EventThreshold(max_attempts=10, window_seconds=10 * 60, severity=Severity.MEDIUM),
    EventKind.INVALID_INPUT: EventThreshold(max_attempts=5, window_seconds=5 * 60, severity=Severity.LOW),
}

DEFAULT_BLOCK_SECONDS = 30 * 60
DEFAULT_ATTEMPT_MAX_AGE_SECONDS = 24 * 60 * 60


@dataclass
class AttemptRecord:
    kind: EventKind
    count: int
    first_attempt_at: float
    last_attempt_at: float


@dataclass(frozen=True)
class BlockRecord:
    reason: str
    blocked_at: float
    expires_at: float

    @property
    def blocked_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.blocked_at, tz=timezone.utc)

    @property
    def expires_at_dt(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass(frozen=True)
class SecurityAlert:
    kind: EventKind
    identifier: str
    severity: Severity
    attempt_count: int
    window_seconds: float
    triggered_at: float
    context: Mapping[str, Any] = field(default_factory=dict)


LogSink = Callable[[Mapping[str, Any]], None]
AlertHook = Callable[[SecurityAlert], None]


def logging_sink(record: Mapping[str, Any]) -> None:
    """Forward a structured tracker record to the ``squadguard.security`` logger."""
    level = record.get("level", logging.INFO)
    message = record.get("msg") or record.get("event", "security record")
    extra = {key: value for key, value in record.items() if key not in {"level", "msg"}}
    logger.log(level, message, extra=extra)


def resolve_kind(kind: EventKind | str) -> EventKind:
    if isinstance(kind, EventKind):
        return kind
    try:
        return EventKind(str(kind).strip().lower())
    except ValueError as exc:
        raise UnknownEventKind(kind) from exc


def resolve_severity(severity: Severity | str) -> Severity:
    if isinstance(severity, Severity):
        return severity
    return Severity(str(severity).strip().lower())


def build_thresholds(
    overrides: Mapping[str, tuple[int, float, Optional[str]]] | None = None,
) -> dict[EventKind, EventThreshold]:
    """Return the default threshold table with per-kind overrides applied."""
    thresholds = dict(DEFAULT_THRESHOLDS)
    for name, (max_attempts, window_seconds, severity) in (overrides or {}).items():
        kind = resolve_kind(name)
        current = thresholds[kind]
        thresholds[kind] = EventThreshold(
            max_attempts=max(1, int(max_attempts)),
            window_seconds=float(window_seconds),
            severity=resolve_severity(severity) if severity else current.severity,
        )
    return thresholds


class SecurityEventTracker:
    """Counts security events per (identifier, kind) and blocks bursty sources.

    One instance is created at startup and shared by every request handler.
    Clock and log sink are injectable so windows can be driven from tests.
    """

    def __init__(
        self,
        thresholds: Mapping[EventKind, EventThreshold] | None = None,
        *,
        block_seconds: float = DEFAULT_BLOCK_SECONDS,
        attempt_max_age_seconds: float = DEFAULT_ATTEMPT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
        log_sink: LogSink = logging_sink,
        alert_hooks: Iterable[AlertHook] = (),
    ) -> None:
        if block_seconds <= 0:
            raise ValueError("block_seconds must be positive")
        self._thresholds: dict[EventKind, EventThreshold] = dict(
            DEFAULT_THRESHOLDS if thresholds is None else thresholds
        )
        self._block_seconds = block_seconds
        self._attempt_max_age_seconds = attempt_max_age_seconds
        self._clock = clock
        self._log_sink = log_sink
        self._alert_hooks = list(alert_hooks)
        self._attempts: dict[tuple[str, EventKind], AttemptRecord] = {}
        self._blocks: dict[str, BlockRecord] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "SecurityEventTracker":
        return cls(
            build_thresholds(settings.event_thresholds),
            block_seconds=settings.block_duration_seconds,
            attempt_max_age_seconds=settings.attempt_max_age_seconds,
            **kwargs,
        )

    @property
    def thresholds(self) -> Mapping[EventKind, EventThreshold]:
        return dict(self._thresholds)

    @property
    def block_seconds(self) -> float:
        return self._block_seconds

    def add_alert_hook(self, hook: AlertHook) -> None:
        self._alert_hooks.append(hook)

    # ---------- Events ----------
    def _configured_kind(self, kind: EventKind | str) -> EventKind:
        event_kind = resolve_kind(kind)
        if event_kind not in self._thresholds:
            raise UnknownEventKind(kind)
        return event_kind

    def record_event(
        self,
        kind: EventKind | str,
        identifier: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        event_kind = self._configured_kind(kind)
        if not identifier:
            raise ValueError("identifier must be a non-empty string")

        threshold = self._thresholds[event_kind]
        details = dict(context or {})
        alert_count: Optional[int] = None

        with self._lock:
            now = self._clock()
            key = (identifier, event_kind)
            record = self._attempts.get(key)
            if record is None or now - record.first_attempt_at > threshold.window_seconds:
                record = AttemptRecord(kind=event_kind, count=1, first_attempt_at=now, last_attempt_at=now)
                self._attempts[key] = record
            else:
                record.count += 1
                record.last_attempt_at = now

            if record.count >= threshold.max_attempts:
                alert_count = record.count
                del self._attempts[key]
            current_count = 0 if alert_count is not None else record.count

        if alert_count is not None:
            self.trigger_alert(event_kind, identifier, threshold.severity, alert_count, details)

        SECURITY_EVENTS_TOTAL.labels(kind=event_kind.value).inc()
        self._emit(
            {
                "level": logging.WARNING,
                "msg": f"Security event {event_kind.value} from {identifier}",
                "event": "security_event",
                "kind": event_kind.value,
                "ip": identifier,
                "attempt_count": alert_count if alert_count is not None else current_count,
                "context": details,
            }
        )

    def trigger_alert(
        self,
        kind: EventKind | str,
        identifier: str,
        severity: Severity | str,
        attempt_count: int,
        context: Optional[Mapping[str, Any]] = None,
    ) -> SecurityAlert:
        event_kind = self._configured_kind(kind)
        alert = SecurityAlert(
            kind=event_kind,
            identifier=identifier,
            severity=resolve_severity(severity),
            attempt_count=attempt_count,
            window_seconds=self._thresholds[event_kind].window_seconds,
            triggered_at=self._clock(),
            context=dict(context or {}),
        )

        SECURITY_ALERTS_TOTAL.labels(kind=event_kind.value, severity=alert.severity.value).inc()
        self._emit(
            {
                "level": logging.ERROR,
                "msg": (
                    f"SECURITY ALERT: {attempt_count} {event_kind.value} attempts from {identifier} "
                    f"within {alert.window_seconds:g} seconds"
                ),
                "event": "security_alert",
                "kind": event_kind.value,
                "ip": identifier,
                "severity": alert.severity.value,
                "attempt_count": attempt_count,
                "window_seconds": alert.window_seconds,
                "context": dict(alert.context),
            }
        )

        for hook in list(self._alert_hooks):
            try:
                hook(alert)
            except Exception:
                logger.exception(
                    "Security alert hook failed",
                    extra={"event": "security_alert_hook_failed", "ip": identifier, "kind": event_kind.value},
                )

        if alert.severity is Severity.HIGH:
            self.block_identifier(identifier, reason=event_kind.value, duration_seconds=self._block_seconds)
        return alert

    # ---------- Blocks ----------
    def block_identifier(
        self,
        identifier: str,
        reason: str,
        duration_seconds: Optional[float] = None,
    ) -> BlockRecord:
        duration = self._block_seconds if duration_seconds is None else duration_seconds
        if duration <= 0:
            raise ValueError("block duration must be positive")

        with self._lock:
            now = self._clock()
            block = BlockRecord(reason=str(reason), blocked_at=now, expires_at=now + duration)
            self._blocks[identifier] = block
            ACTIVE_BLOCKS.set(len(self._blocks))

        BLOCKS_TOTAL.labels(reason=block.reason).inc()
        self._emit(
            {
                "level": logging.WARNING,
                "msg": f"Identifier {identifier} temporarily blocked for {duration:g} seconds",
                "event": "temporary_block",
                "ip": identifier,
                "reason": block.reason,
                "duration_seconds": duration,
                "expires_at": block.expires_at_dt.isoformat(),
            }
        )
        return block

    def get_block_info(self, identifier: str) -> Optional[BlockRecord]:
        with self._lock:
            block = self._blocks.get(identifier)
            if block is None:
                return None
            if self._clock() < block.expires_at:
                return block
            del self._blocks[identifier]
            ACTIVE_BLOCKS.set(len(self._blocks))

        self._emit(
            {
                "level": logging.INFO,
                "msg": f"Identifier {identifier} unblocked after expiry",
                "event": "block_expired",
                "ip": identifier,
                "reason": block.reason,
            }
        )
        return None

    def is_blocked(self, identifier: str) -> bool:
        return self.get_block_info(identifier) is not None

    def unblock(self, identifier: str) -> bool:
        with self._lock:
            block = self._blocks.pop(identifier, None)
            ACTIVE_BLOCKS.set(len(self._blocks))
        if block is None:
            return False
        self._emit(
            {
                "level": logging.INFO,
                "msg": f"Identifier {identifier} unblocked manually",
                "event": "block_removed",
                "ip": identifier,
                "reason": block.reason,
            }
        )
        return True

    def active_blocks(self) -> list[tuple[str, BlockRecord]]:
        with self._lock:
            now = self._clock()
            return sorted(
                ((identifier, block) for identifier, block in self._blocks.items() if now < block.expires_at),
                key=lambda item: item[1].expires_at,
            )

    def attempt_count(self, identifier: str, kind: EventKind | str) -> int:
        event_kind = self._configured_kind(kind)
        with self._lock:
            record = self._attempts.get((identifier, event_kind))
            return record.count if record else 0

    # ---------- Housekeeping ----------
    def sweep_expired(self) -> None:
        with self._lock:
            now = self._clock()
            stale_attempts = [
                key
                for key, record in list(self._attempts.items())
                if now - record.last_attempt_at > self._attempt_max_age_seconds
            ]
            for key in stale_attempts:
                del self._attempts[key]

            expired_blocks = [identifier for identifier, block in list(self._blocks.items()) if now >= block.expires_at]
            for identifier in expired_blocks:
                del self._blocks[identifier]
            ACTIVE_BLOCKS.set(len(self._blocks))

        if stale_attempts or expired_blocks:
            self._emit(
                {
                    "level": logging.INFO,
                    "msg": "Expired security records swept",
                    "event": "security_sweep",
                    "removed_attempts": len(stale_attempts),
                    "removed_blocks": len(expired_blocks),
                }
            )

    def _emit(self, record: Mapping[str, Any]) -> None:
        try:
            self._log_sink(record)
        except Exception:
            # Telemetry must not break the request path.
            logger.debug("Security log sink failed", exc_info=True)


def safe_record_event(
    tracker: SecurityEventTracker,
    kind: EventKind | str,
    identifier: str,
    context: Optional[Mapping[str, Any]] = None,
) -> None:
    """Record an event from a request path, logging and ignoring caller mistakes."""
    try:
        tracker.record_event(kind, identifier, context)
    except UnknownEventKind as exc:
        logger.error(
            "Ignoring security event with unknown kind",
            extra={"event": "unknown_event_kind", "kind": str(exc.kind), "ip": identifier},
        )
    except ValueError:
        logger.error(
            "Ignoring security event without identifier",
            extra={"event": "invalid_event_identifier", "kind": str(kind)},
        )

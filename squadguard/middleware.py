from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Mapping

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from .config import Settings
from .detection import PayloadTooDeep, sanitize_object
from .metrics import REQUESTS_TOTAL
from .rate_limit import EndpointRateLimiter
from .security_events import EventKind, SecurityEventTracker, safe_record_event

logger = logging.getLogger("squadguard.guard")

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

CallNext = Callable[[Request], Awaitable[Response]]


def client_ip(request: Request, trust_forwarded: bool = False) -> str:
    """Enable ``trust_forwarded`` only behind a proxy that overwrites these headers; clients can forge them."""
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("x-real-ip")
        if real_ip and real_ip.strip():
            return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class SecurityGuard:
    """HTTP guard that enforces blocks and rate limits and inspects payloads.

    Every violation it sees is fed into the shared tracker, which decides when
    a source has misbehaved often enough to be blocked.
    """

    def __init__(self, tracker: SecurityEventTracker, limiter: EndpointRateLimiter, settings: Settings) -> None:
        self.tracker = tracker
        self.limiter = limiter
        self.settings = settings

    def _respond(
        self,
        request: Request,
        status_code: int,
        content: Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
    ) -> JSONResponse:
        REQUESTS_TOTAL.labels(method=request.method, path=request.url.path, status=str(status_code)).inc()
        return JSONResponse(status_code=status_code, content=dict(content), headers=dict(headers or {}))

    def _invalid_input(
        self,
        request: Request,
        ip: str,
        user_agent: str,
        status_code: int,
        detail: str,
        payload: Mapping[str, Any],
    ) -> JSONResponse:
        safe_record_event(
            self.tracker,
            EventKind.INVALID_INPUT,
            ip,
            {"endpoint": request.url.path, "user_agent": user_agent, "payload": dict(payload)},
        )
        return self._respond(request, status_code, {"detail": detail})

    def _blocked(self, request: Request, ip: str) -> JSONResponse | None:
        block = self.tracker.get_block_info(ip)
        if block is None:
            return None
        logger.warning(
            "Request from blocked identifier rejected",
            extra={"event": "blocked_request", "ip": ip, "reason": block.reason, "path": request.url.path},
        )
        return self._respond(
            request,
            403,
            {
                "detail": "Access temporarily blocked due to suspicious activity",
                "reason": block.reason,
                "blocked_until": block.expires_at_dt.isoformat(),
            },
        )

    async def _read_body(self, request: Request) -> bytes | None:
        """Read the body, giving up once more than ``max_body_bytes`` have arrived.

        Chunked uploads carry no Content-Length, so the header check alone
        cannot bound them.
        """
        limit = self.settings.max_body_bytes
        chunks: list[bytes] = []
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > limit:
                return None
            chunks.append(chunk)

        body = b"".join(chunks)
        # Downstream handlers replay the cached body instead of the drained stream.
        request._body = body
        return body

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        path = request.url.path
        if path in self.settings.guard_exempt_paths:
            return await call_next(request)

        method = request.method
        ip = client_ip(request, self.settings.trust_forwarded_headers)
        user_agent = request.headers.get("user-agent", "")

        blocked = self._blocked(request, ip)
        if blocked is not None:
            return blocked

        decision = self.limiter.check(ip, path)
        if not decision.allowed:
            safe_record_event(
                self.tracker,
                EventKind.RATE_LIMIT,
                ip,
                {
                    "endpoint": path,
                    "user_agent": user_agent,
                    "payload": {"attempts": decision.attempts, "max_allowed": decision.rule.max_requests},
                },
            )
            retry_after = str(decision.rule.window_seconds)
            return self._respond(
                request,
                429,
                {"detail": "Rate limit exceeded", "retry_after": decision.rule.window_seconds},
                headers={
                    "Retry-After": retry_after,
                    "X-RateLimit-Limit": str(decision.rule.max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

        if method in BODY_METHODS:
            content_type = request.headers.get("content-type", "")
            if "application/json" not in content_type.lower():
                return self._invalid_input(
                    request,
                    ip,
                    user_agent,
                    400,
                    "Content-Type must be application/json",
                    {"content_type": content_type},
                )

        content_length = request.headers.get("content-length")
        if content_length:
            try:
                too_large = int(content_length) > self.settings.max_body_bytes
            except ValueError:
                too_large = False
            if too_large:
                return self._invalid_input(
                    request,
                    ip,
                    user_agent,
                    413,
                    "Payload too large",
                    {"content_length": content_length},
                )

        if len(user_agent) < self.settings.min_user_agent_length:
            return self._invalid_input(request, ip, user_agent, 400, "Invalid User-Agent", {})

        if method in BODY_METHODS:
            raw_body = await self._read_body(request)
            if raw_body is None:
                return self._invalid_input(
                    request,
                    ip,
                    user_agent,
                    413,
                    "Payload too large",
                    {"content_length": content_length or "chunked"},
                )
            if raw_body.strip() and not path.startswith(self.settings.inspection_exempt_prefixes):
                try:
                    body = json.loads(raw_body)
                except (ValueError, RecursionError) as exc:
                    return self._invalid_input(
                        request,
                        ip,
                        user_agent,
                        400,
                        "Invalid JSON payload",
                        {"error": str(exc)[:200]},
                    )
                try:
                    request.state.sanitized_body = sanitize_object(
                        body,
                        tracker=self.tracker,
                        ip=ip,
                        endpoint=path,
                        user_agent=user_agent,
                        max_depth=self.settings.max_json_depth,
                    )
                except PayloadTooDeep as exc:
                    return self._invalid_input(
                        request,
                        ip,
                        user_agent,
                        400,
                        "Payload nesting too deep",
                        {"max_depth": exc.max_depth},
                    )
                blocked = self._blocked(request, ip)
                if blocked is not None:
                    return blocked

        response = await call_next(request)
        REQUESTS_TOTAL.labels(method=method, path=path, status=str(response.status_code)).inc()
        return response

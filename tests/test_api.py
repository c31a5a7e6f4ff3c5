from dataclasses import replace

from fastapi import Request
from fastapi.testclient import TestClient
import pytest

from squadguard.config import settings
from squadguard.main import create_app, run
from squadguard.security import create_access_token
from squadguard.security_events import EventKind, SecurityEventTracker

UA = {"User-Agent": "Mozilla/5.0 (pytest)"}


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


def _client_headers(ip: str, **extra: str) -> dict[str, str]:
    return {**UA, "X-Forwarded-For": ip, **extra}


def _admin_headers() -> dict[str, str]:
    token = create_access_token("ops", is_admin=True)
    return {**UA, "Authorization": f"Bearer {token}"}


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def tracker(clock) -> SecurityEventTracker:
    return SecurityEventTracker(clock=clock, log_sink=lambda _record: None)


def _build_app(tracker: SecurityEventTracker, **overrides):
    overrides.setdefault("trust_forwarded_headers", True)
    app = create_app(replace(settings, **overrides), tracker=tracker)

    @app.post("/api/echo")
    async def echo(request: Request) -> dict:
        return {"body": getattr(request.state, "sanitized_body", None)}

    @app.post("/api/raw")
    async def raw(request: Request) -> dict:
        return {"body": await request.json()}

    return app


@pytest.fixture()
def client(tracker) -> TestClient:
    return TestClient(_build_app(tracker))


def test_health_is_exempt_from_guard(client):
    response = client.get("/health", headers={"User-Agent": ""})
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_blocked_identifier_is_rejected(client, tracker):
    tracker.block_identifier("6.6.6.6", reason="xss")

    response = client.get("/api/health", headers=_client_headers("6.6.6.6"))

    assert response.status_code == 403
    body = response.json()
    assert body["reason"] == "xss"
    assert body["blocked_until"]
    assert client.get("/api/health", headers=_client_headers("6.6.6.7")).status_code == 200


def test_block_lapses_after_expiry(client, tracker, clock):
    tracker.block_identifier("6.6.6.6", reason="xss", duration_seconds=60)
    clock.now += 60

    assert client.get("/api/health", headers=_client_headers("6.6.6.6")).status_code == 200


def test_rate_limit_returns_429_and_records_event(tracker):
    client = TestClient(_build_app(tracker, rate_limit_requests=2, rate_limit_window_seconds=60))

    statuses = [client.get("/api/health", headers=_client_headers("7.7.7.7")).status_code for _ in range(3)]
    limited = client.get("/api/health", headers=_client_headers("7.7.7.7"))

    assert statuses == [200, 200, 429]
    assert limited.headers["Retry-After"] == "60"
    assert limited.headers["X-RateLimit-Limit"] == "2"
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    assert tracker.attempt_count("7.7.7.7", EventKind.RATE_LIMIT) == 2


def test_endpoint_specific_limit(tracker):
    client = TestClient(_build_app(tracker, endpoint_rate_limits={"/api/echo": (1, 60)}))
    headers = _client_headers("7.7.7.8")

    assert client.post("/api/echo", json={"a": 1}, headers=headers).status_code == 200
    assert client.post("/api/echo", json={"a": 1}, headers=headers).status_code == 429
    assert client.get("/api/health", headers=headers).status_code == 200


def test_post_requires_json_content_type(client, tracker):
    response = client.post(
        "/api/echo",
        content="name=value",
        headers=_client_headers("8.8.8.1", **{"Content-Type": "application/x-www-form-urlencoded"}),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Content-Type must be application/json"
    assert tracker.attempt_count("8.8.8.1", EventKind.INVALID_INPUT) == 1


def test_payload_too_large(tracker):
    client = TestClient(_build_app(tracker, max_body_bytes=16))

    response = client.post("/api/echo", json={"text": "x" * 64}, headers=_client_headers("8.8.8.2"))

    assert response.status_code == 413
    assert tracker.attempt_count("8.8.8.2", EventKind.INVALID_INPUT) == 1


def test_short_user_agent_is_rejected(client, tracker):
    response = client.get("/api/health", headers={"User-Agent": "curl", "X-Forwarded-For": "8.8.8.3"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid User-Agent"
    assert tracker.attempt_count("8.8.8.3", EventKind.INVALID_INPUT) == 1


def test_invalid_json_is_rejected(client, tracker):
    response = client.post(
        "/api/echo",
        content="{not json",
        headers=_client_headers("8.8.8.4", **{"Content-Type": "application/json"}),
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid JSON payload"
    assert tracker.attempt_count("8.8.8.4", EventKind.INVALID_INPUT) == 1


def test_sanitized_body_reaches_handler(client):
    response = client.post(
        "/api/echo",
        json={"name": "<b>Squad</b>", "level": 3},
        headers=_client_headers("8.8.8.5"),
    )

    assert response.status_code == 200
    assert response.json()["body"] == {"name": "&lt;b&gt;Squad&lt;/b&gt;", "level": 3}


def test_repeated_sql_injection_blocks_source(client, tracker):
    headers = _client_headers("9.9.9.9")
    payload = {"comment": "' OR 1=1--"}

    first = client.post("/api/echo", json=payload, headers=headers)
    second = client.post("/api/echo", json=payload, headers=headers)
    third = client.post("/api/echo", json=payload, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert third.status_code == 403
    assert third.json()["reason"] == "sql_injection"
    assert client.get("/api/health", headers=headers).status_code == 403


def test_admin_routes_require_admin_token(client):
    assert client.get("/api/security/blocks", headers=UA).status_code == 401

    user_token = create_access_token("player-1", is_admin=False)
    response = client.get("/api/security/blocks", headers={**UA, "Authorization": f"Bearer {user_token}"})
    assert response.status_code == 403

    response = client.get("/api/security/blocks", headers={**UA, "Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_admin_block_lifecycle(client):
    headers = _admin_headers()

    created = client.post(
        "/api/security/blocks",
        json={"identifier": "10.0.0.9", "reason": "manual", "duration_seconds": 120},
        headers=headers,
    )
    assert created.status_code == 201
    assert created.json()["reason"] == "manual"

    listed = client.get("/api/security/blocks", headers=headers)
    assert [item["identifier"] for item in listed.json()] == ["10.0.0.9"]

    assert client.get("/api/security/blocks/10.0.0.9", headers=headers).status_code == 200
    assert client.delete("/api/security/blocks/10.0.0.9", headers=headers).status_code == 204
    assert client.get("/api/security/blocks/10.0.0.9", headers=headers).status_code == 404
    assert client.delete("/api/security/blocks/10.0.0.9", headers=headers).status_code == 404


def test_report_event_endpoint(client, tracker):
    headers = _admin_headers()

    unknown = client.post(
        "/api/security/events",
        json={"kind": "brute_force", "identifier": "11.0.0.1"},
        headers=headers,
    )
    assert unknown.status_code == 400

    results = [
        client.post(
            "/api/security/events",
            json={"kind": "xss", "identifier": "11.0.0.1", "context": {"payload": "<script>alert(1)</script>"}},
            headers=headers,
        )
        for _ in range(3)
    ]

    assert [result.status_code for result in results] == [202, 202, 202]
    assert [result.json()["blocked"] for result in results] == [False, False, True]
    assert tracker.is_blocked("11.0.0.1") is True
    assert tracker.is_blocked("testclient") is False


def test_metrics_endpoint(client, tracker):
    client.get("/api/health", headers=_client_headers("12.0.0.1"))

    response = client.get("/metrics")
    assert response.status_code == 200
    assert "squadguard_requests_total" in response.text

    disabled = TestClient(_build_app(tracker, enable_prometheus_metrics=False))
    assert disabled.get("/metrics").status_code == 404


def test_sweeper_follows_application_lifecycle(tracker):
    app = _build_app(tracker)

    with TestClient(app):
        assert app.state.sweeper.is_running is True

    assert app.state.sweeper.is_running is False


def test_deeply_nested_json_is_rejected_as_invalid_input(client, tracker):
    headers = _client_headers("8.8.9.1", **{"Content-Type": "application/json"})

    unparseable = client.post("/api/echo", content="[" * 5000 + "]" * 5000, headers=headers)
    too_deep = client.post("/api/echo", content="[" * 950 + "]" * 950, headers=headers)

    assert unparseable.status_code == 400
    assert too_deep.status_code == 400
    assert tracker.attempt_count("8.8.9.1", EventKind.INVALID_INPUT) == 2


def test_nesting_depth_limit(tracker):
    client = TestClient(_build_app(tracker, max_json_depth=4))
    headers = _client_headers("8.8.9.2", **{"Content-Type": "application/json"})

    allowed = client.post("/api/echo", json={"a": [[{"b": "ok"}]]}, headers=headers)
    rejected = client.post("/api/echo", json={"a": [[{"b": ["too deep"]}]]}, headers=headers)

    assert allowed.status_code == 200
    assert allowed.json()["body"] == {"a": [[{"b": "ok"}]]}
    assert rejected.status_code == 400
    assert rejected.json()["detail"] == "Payload nesting too deep"
    assert tracker.attempt_count("8.8.9.2", EventKind.INVALID_INPUT) == 1


def test_chunked_body_is_capped_by_bytes_read(tracker):
    client = TestClient(_build_app(tracker, max_body_bytes=16))
    headers = _client_headers("8.8.9.3", **{"Content-Type": "application/json"})

    response = client.post("/api/echo", content=iter([b'{"text": "', b"x" * 64, b'"}']), headers=headers)

    assert response.status_code == 413
    assert tracker.attempt_count("8.8.9.3", EventKind.INVALID_INPUT) == 1


def test_inspected_body_is_still_readable_downstream(client):
    response = client.post(
        "/api/raw",
        content=iter([b'{"name": ', b'"Squad"}']),
        headers=_client_headers("8.8.9.4", **{"Content-Type": "application/json"}),
    )

    assert response.status_code == 200
    assert response.json()["body"] == {"name": "Squad"}


def test_security_headers_are_set(client, tracker):
    response = client.get("/api/health", headers=_client_headers("12.0.0.2"))

    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert response.headers["Cross-Origin-Opener-Policy"] == "same-origin"
    assert "camera=()" in response.headers["Permissions-Policy"]
    assert "frame-ancestors 'none'" in response.headers["Content-Security-Policy"]
    assert "Strict-Transport-Security" not in response.headers

    tracker.block_identifier("12.0.0.3", reason="xss")
    blocked = client.get("/api/health", headers=_client_headers("12.0.0.3"))
    assert blocked.status_code == 403
    assert blocked.headers["X-Frame-Options"] == "DENY"


def test_hsts_on_https_and_in_production(client, tracker):
    secure = client.get("https://testserver/api/health", headers=_client_headers("12.0.0.4"))
    assert secure.headers["Strict-Transport-Security"].startswith("max-age=31536000")

    production = TestClient(_build_app(tracker, env="production"))
    response = production.get("/api/health", headers=_client_headers("12.0.0.5"))
    assert "Strict-Transport-Security" in response.headers
    assert "upgrade-insecure-requests" in response.headers["Content-Security-Policy"]
    assert "localhost:3000" not in response.headers["Content-Security-Policy"]


def test_security_headers_can_be_disabled(tracker):
    client = TestClient(_build_app(tracker, security_headers_enabled=False))

    response = client.get("/api/health", headers=_client_headers("12.0.0.6"))

    assert "Content-Security-Policy" not in response.headers


def test_forwarded_headers_are_ignored_by_default(tracker):
    client = TestClient(create_app(replace(settings, trust_forwarded_headers=False), tracker=tracker))
    tracker.block_identifier("1.2.3.4", reason="xss")

    spoofed = client.get("/api/health", headers={**UA, "X-Forwarded-For": "1.2.3.4"})
    assert spoofed.status_code == 200

    tracker.block_identifier("testclient", reason="xss")
    dodged = client.get("/api/health", headers={**UA, "X-Forwarded-For": "5.5.5.5"})
    assert dodged.status_code == 403


def test_run_starts_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr("uvicorn.run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setenv("PORT", "9100")
    monkeypatch.delenv("HOST", raising=False)

    run()

    expected = {"host": "0.0.0.0", "port": 9100, "reload": not settings.is_production}
    assert calls == [("squadguard.main:app", expected)]

"""
Tests for main API endpoints.

Integration tests for the FastAPI application: gateway middleware, error
envelopes, and the health, auth, security and analytics routers.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from doctools_server.analytics import AnalyticsPersistenceError
from doctools_server.main_api import create_app
from doctools_server.request_log import LogEntry
from doctools_server.services import build_services

from tests.conftest import BROWSER_UA

ATTACKER_IP = "203.0.113.5"
# Peer address TestClient reports for every request
TESTCLIENT_PEER = "testclient"


def admin_auth(services, password) -> dict:
    token = services.auth.login(password)["token"]
    return {"Authorization": f"Bearer {token}"}


def from_ip(ip: str) -> dict:
    return {"User-Agent": BROWSER_UA, "X-Forwarded-For": ip}


def solve(question: str) -> int:
    """Answer a 'What is a + b?' challenge"""
    a, op, b = question[len("What is "):-1].split()
    return int(a) + int(b) if op == "+" else int(a) - int(b)


class TestHealthEndpoints:
    """Test health endpoints."""

    def test_health(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "healthy"
        assert "uptimeHuman" in data

    def test_health_skips_gateway(self, client, services):
        """Test that health checks are neither filtered nor audited."""
        response = client.get("/api/health", headers={"User-Agent": "curl/8.4.0"})

        assert response.status_code == 200
        assert len(services.audit_log) == 0

    def test_ready(self, client):
        response = client.get("/api/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["ready"] is True
        assert data["checks"]["dataDir"]["status"] == "healthy"
        assert data["checks"]["logDir"]["status"] == "healthy"

    def test_not_ready_without_data_dir(self, client, services):
        import shutil

        shutil.rmtree(services.settings.data_dir)

        response = client.get("/api/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["dataDir"]["status"] == "unhealthy"


class TestMiddleware:
    """Test request id, security headers, CORS and error envelopes."""

    def test_security_headers(self, client, browser_headers):
        response = client.get("/api/auth/status", headers=browser_headers)

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "max-age" in response.headers["Strict-Transport-Security"]

    def test_request_id_generated(self, client, browser_headers):
        response = client.get("/api/auth/status", headers=browser_headers)

        assert response.headers["X-Request-ID"].startswith("req_")

    def test_request_id_propagated(self, client, services, browser_headers):
        headers = {**browser_headers, "X-Request-ID": "trace-abc-123"}

        response = client.get("/api/auth/status", headers=headers)

        assert response.headers["X-Request-ID"] == "trace-abc-123"
        assert services.audit_log.recent(1)[0].request_id == "trace-abc-123"

    def test_request_is_audited(self, make_settings, make_client, browser_headers):
        client, services = make_client(make_settings(forwarded_allow_ips=TESTCLIENT_PEER))

        client.get("/api/auth/status?tab=1", headers={**browser_headers, "X-Forwarded-For": "198.51.100.7"})

        entry = services.audit_log.recent(1)[0]
        assert entry.path == "/api/auth/status"
        assert entry.query == {"tab": "1"}
        assert entry.ip == "198.51.100.7"
        assert entry.status_code == 200
        assert entry.user_agent == BROWSER_UA

    def test_cors_preflight(self, client):
        response = client.options(
            "/api/analytics/track",
            headers={
                "Origin": "https://tools.example.com",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_unknown_endpoint(self, client, browser_headers):
        response = client.get("/api/does-not-exist", headers=browser_headers)

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Endpoint not found"}

    def test_validation_error_envelope(self, client, admin_headers):
        response = client.post("/api/security/block", json={"ip": "999.1.1.1"}, headers=admin_headers)

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "Validation error"
        assert data["details"][0]["field"] == "ip"

    def test_persistence_error(self, client, services, browser_headers):
        failing = AsyncMock(side_effect=AnalyticsPersistenceError("disk full"))

        with patch.object(services.analytics, "ingest", failing):
            response = client.post("/api/analytics/track", json={"event": "pageview"}, headers=browser_headers)

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Failed to persist analytics data"}


class TestUnhandledErrors:
    """Unexpected exceptions become a 500 envelope with the request id."""

    def _client(self, settings, clock):
        services = build_services(settings, clock=clock)
        app = create_app(settings=settings, services=services)
        return TestClient(app, raise_server_exceptions=False), services

    def test_message_shown_outside_production(self, make_settings, clock, admin_password):
        client, services = self._client(make_settings(), clock)
        headers = admin_auth(services, admin_password)

        with client, patch.object(services.gateway, "security_status", side_effect=RuntimeError("boom")):
            response = client.get("/api/security/status", headers={**headers, "X-Request-ID": "req-500"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "boom", "requestId": "req-500"}
        assert services.audit_log.recent(1)[0].status_code == 500

    def test_message_hidden_in_production(self, make_settings, clock, admin_password):
        client, services = self._client(make_settings(environment="production"), clock)
        headers = admin_auth(services, admin_password)

        with client, patch.object(services.gateway, "security_status", side_effect=RuntimeError("boom")):
            response = client.get("/api/security/status", headers=headers)

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"


class TestGateway:
    """End-to-end admission decisions."""

    def test_bad_bot_rejected(self, client, services):
        response = client.get("/api/auth/status", headers={"User-Agent": "curl/8.4.0"})

        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "error": "Automated access not allowed",
            "reason": "bad_bot",
        }
        assert services.audit_log.recent(1)[0].status_code == 403

    def test_good_bot_allowed(self, client):
        ua = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"

        assert client.get("/api/auth/status", headers={"User-Agent": ua}).status_code == 200

    def test_window_limit_and_recovery(self, make_settings, make_client, clock):
        """31st request inside one minute is refused until the block ends."""
        settings = make_settings(
            rate_limit_max_requests=30,
            rapid_threshold=20,
            forwarded_allow_ips=TESTCLIENT_PEER,
        )
        client, _ = make_client(settings)
        headers = from_ip(ATTACKER_IP)

        for _ in range(30):
            assert client.get("/api/auth/status", headers=headers).status_code == 200
            clock.advance(1300)

        response = client.get("/api/auth/status", headers=headers)
        assert response.status_code == 429
        assert response.json()["reason"] == "rate_limited"
        assert response.json()["retryAfter"] == 300
        assert response.headers["Retry-After"] == "300"

        assert client.get("/api/auth/status", headers=from_ip("203.0.113.99")).status_code == 200

        clock.advance(301_000)
        assert client.get("/api/auth/status", headers=headers).status_code == 200

    def test_rapid_burst_blocks(self, make_settings, make_client):
        settings = make_settings(rapid_threshold=5, forwarded_allow_ips=TESTCLIENT_PEER)
        client, services = make_client(settings)
        headers = from_ip(ATTACKER_IP)

        for _ in range(5):
            client.get("/api/auth/status", headers=headers)

        response = client.get("/api/auth/status", headers=headers)
        assert response.status_code == 429
        assert response.json()["reason"] == "rapid_requests"
        assert services.registry.is_blocked(ATTACKER_IP) is True

        response = client.get("/api/auth/status", headers=headers)
        assert response.status_code == 403
        assert response.json()["reason"] == "ip_blocked"

    def test_manual_block_expires(self, make_settings, make_client, clock, admin_password):
        client, services = make_client(make_settings(forwarded_allow_ips=TESTCLIENT_PEER))
        admin_headers = admin_auth(services, admin_password)

        response = client.post(
            "/api/security/block",
            json={"ip": ATTACKER_IP, "duration": 1000},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["message"] == f"IP {ATTACKER_IP} blocked for 1 seconds"

        response = client.get("/api/auth/status", headers=from_ip(ATTACKER_IP))
        assert response.status_code == 403
        assert response.json()["error"] == "Access temporarily blocked"

        clock.advance(1001)
        assert client.get("/api/auth/status", headers=from_ip(ATTACKER_IP)).status_code == 200


class TestClientAddress:
    """Which address the IP-keyed controls see."""

    def test_forwarded_header_does_not_escape_block(self, client, services):
        services.registry.block(TESTCLIENT_PEER, 60_000)

        assert client.get("/api/auth/status", headers={"User-Agent": BROWSER_UA}).status_code == 403
        assert client.get("/api/auth/status", headers=from_ip("1.2.3.4")).status_code == 403

    def test_rotating_forwarded_header_still_limited(self, make_settings, make_client):
        client, services = make_client(make_settings(rate_limit_max_requests=3))

        statuses = [
            client.get("/api/auth/status", headers=from_ip(f"198.51.100.{i}")).status_code
            for i in range(10)
        ]

        assert statuses[:3] == [200, 200, 200]
        assert set(statuses[3:]) == {429}
        assert {entry.ip for entry in services.audit_log.recent(10)} == {TESTCLIENT_PEER}

    def test_forwarded_header_ignored_from_untrusted_peer(self, make_settings, make_client):
        client, services = make_client(make_settings(forwarded_allow_ips="10.0.0.1"))

        client.get("/api/auth/status", headers=from_ip(ATTACKER_IP))

        assert services.audit_log.recent(1)[0].ip == TESTCLIENT_PEER

    def test_trusted_proxy_forwards_client(self, make_settings, make_client):
        client, services = make_client(make_settings(forwarded_allow_ips=TESTCLIENT_PEER))

        client.get("/api/auth/status", headers=from_ip(f"{ATTACKER_IP}, {TESTCLIENT_PEER}"))

        assert services.audit_log.recent(1)[0].ip == ATTACKER_IP


class TestAuthEndpoints:
    """Test /api/auth routes."""

    def test_login_success(self, client, admin_password, browser_headers):
        response = client.post("/api/auth/login", json={"password": admin_password}, headers=browser_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["expiresIn"] == 86400
        assert data["token"]

    def test_damaged_credential_file(self, make_settings, make_client, browser_headers):
        """The app still starts, but login is refused instead of accepting the default"""
        settings = make_settings(admin_password="admin123")
        settings.data_dir.mkdir(parents=True)
        settings.admin_file.write_text('{"loginAttempts": 0}', encoding="utf-8")
        client, _ = make_client(settings)

        response = client.post("/api/auth/login", json={"password": "admin123"}, headers=browser_headers)

        assert response.status_code == 503
        assert response.json() == {"success": False, "error": "Admin credential unavailable"}
        assert client.get("/api/health").status_code == 200

    def test_login_wrong_password(self, client, browser_headers):
        response = client.post("/api/auth/login", json={"password": "wrong"}, headers=browser_headers)

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Invalid password", "attemptsRemaining": 4}

    def test_account_lockout(self, client, admin_password, browser_headers):
        for _ in range(4):
            client.post("/api/auth/login", json={"password": "wrong"}, headers=browser_headers)

        response = client.post("/api/auth/login", json={"password": "wrong"}, headers=browser_headers)

        assert response.status_code == 429
        assert "Account locked for 15 minutes" in response.json()["error"]

        status = client.get("/api/auth/status", headers=browser_headers).json()["status"]
        assert status["isLocked"] is True

    def test_login_throttle(self, client, admin_password, browser_headers):
        """The sixth login from one client inside the window is refused."""
        for _ in range(5):
            response = client.post("/api/auth/login", json={"password": admin_password}, headers=browser_headers)
            assert response.status_code == 200

        response = client.post("/api/auth/login", json={"password": admin_password}, headers=browser_headers)

        assert response.status_code == 429
        assert response.json()["error"] == "Too many login attempts, please try again later."
        assert response.headers["Retry-After"] == "900"

    def test_login_requires_password(self, client, browser_headers):
        response = client.post("/api/auth/login", json={}, headers=browser_headers)

        assert response.status_code == 400
        assert response.json()["details"][0]["field"] == "password"

    def test_verify(self, client, admin_headers, browser_headers):
        response = client.get("/api/auth/verify", headers={**admin_headers, **browser_headers})

        assert response.status_code == 200
        assert response.json()["admin"]["role"] == "admin"

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer not-a-token"},
        {"Authorization": "Basic YWRtaW46YWRtaW4="},
    ])
    def test_missing_or_bad_session(self, client, browser_headers, headers):
        """Every auth failure gets the same message."""
        response = client.get("/api/auth/verify", headers={**browser_headers, **headers})

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Invalid or missing session"}

    def test_logout(self, client, admin_headers):
        response = client.post("/api/auth/logout", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_change_password(self, client, services, admin_headers, admin_password):
        response = client.post(
            "/api/auth/change-password",
            json={"currentPassword": admin_password, "newPassword": "brand-new-pass"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert services.auth.login("brand-new-pass")["token"]

    def test_change_password_too_short(self, client, admin_headers, admin_password):
        response = client.post(
            "/api/auth/change-password",
            json={"currentPassword": admin_password, "newPassword": "abc"},
            headers=admin_headers,
        )

        assert response.status_code == 400
        assert response.json()["details"][0]["field"] == "newPassword"

    def test_change_password_wrong_current(self, client, admin_headers):
        response = client.post(
            "/api/auth/change-password",
            json={"currentPassword": "not-it", "newPassword": "brand-new-pass"},
            headers=admin_headers,
        )

        assert response.status_code == 401
        assert response.json()["error"] == "Current password is incorrect"

    def test_credential_file_created_at_startup(self, client, services):
        assert services.settings.admin_file.exists()


class TestSecurityEndpoints:
    """Test /api/security routes."""

    @pytest.mark.parametrize("path", [
        "/api/security/status",
        "/api/security/logs",
        "/api/security/threats",
        "/api/security/settings",
    ])
    def test_admin_only(self, client, browser_headers, path):
        assert client.get(path, headers=browser_headers).status_code == 401

    def test_status(self, client, admin_headers):
        response = client.get("/api/security/status", headers=admin_headers)

        assert response.status_code == 200
        security = response.json()["security"]
        assert security["status"] == "secure"
        assert security["blockedIPs"] == 0

    def test_status_warning(self, client, services, admin_headers, clock):
        now = clock.datetime()
        statuses = [200] * 480 + [403, 429] * 4 + [200] * 12
        for i, status in enumerate(statuses):
            services.audit_log.record(LogEntry(
                timestamp=now - timedelta(seconds=len(statuses) - i),
                method="GET",
                path="/api/tools",
                ip="198.51.100.1",
                user_agent=BROWSER_UA,
                request_id=f"req_{i}",
                status_code=status,
                response_time_ms=5,
            ))

        security = client.get("/api/security/status", headers=admin_headers).json()["security"]

        assert security["status"] == "warning"
        assert security["suspiciousRequests"] == 8

    def test_block_default_duration_and_unblock(self, client, services, admin_headers):
        response = client.post("/api/security/block", json={"ip": "198.51.100.23"}, headers=admin_headers)

        assert response.json()["message"] == "IP 198.51.100.23 blocked for 300 seconds"
        status = client.get("/api/security/status", headers=admin_headers).json()["security"]
        assert status["blockedIPList"] == ["198.51.100.23"]

        response = client.post("/api/security/unblock", json={"ip": "198.51.100.23"}, headers=admin_headers)

        assert response.json()["wasBlocked"] is True
        assert services.registry.is_blocked("198.51.100.23") is False

    def test_block_duration_bounds(self, client, admin_headers):
        response = client.post(
            "/api/security/block",
            json={"ip": "198.51.100.23", "duration": 10},
            headers=admin_headers,
        )

        assert response.status_code == 400

    def test_logs(self, client, admin_headers, browser_headers):
        for path in ("/api/auth/status", "/api/health", "/api/does-not-exist"):
            client.get(path, headers=browser_headers)

        response = client.get("/api/security/logs?limit=1", headers=admin_headers)

        data = response.json()
        assert data["total"] == 1
        assert data["logs"][0]["path"] == "/api/does-not-exist"
        assert data["logs"][0]["statusCode"] == 404

    @pytest.mark.parametrize("limit", ["abc", "0", "-5"])
    def test_logs_bad_limit_falls_back(self, client, admin_headers, browser_headers, limit):
        client.get("/api/auth/status", headers=browser_headers)

        response = client.get(f"/api/security/logs?limit={limit}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_threats(self, client, admin_headers, browser_headers):
        client.get("/api/auth/status?q=<script>alert(1)</script>", headers=browser_headers)

        data = client.get("/api/security/threats", headers=admin_headers).json()

        assert data["threats"]["xssAttempt"] == 1
        assert data["analyzedLogs"] == 1

    def test_settings(self, client, admin_headers):
        settings = client.get("/api/security/settings", headers=admin_headers).json()["settings"]

        assert settings["rateLimitMax"] == 1000
        assert settings["blockDuration"] == 300000
        assert settings["loginRateLimit"] == "5/15minutes"

    def test_check_action_plain(self, client, browser_headers):
        response = client.post("/api/security/check-action", json={"actionType": "merge"}, headers=browser_headers)

        assert response.status_code == 200
        assert response.json()["allowed"] is True

    def test_check_action_honeypot(self, client, browser_headers):
        response = client.post(
            "/api/security/check-action",
            json={"actionType": "merge", "honeypot": "filled"},
            headers=browser_headers,
        )

        data = response.json()
        assert response.status_code == 200
        assert data["allowed"] is False
        assert data["reason"] == "bot_detected"

    def test_check_action_challenge_flow(self, client, browser_headers):
        response = client.post(
            "/api/security/check-action",
            json={"actionType": "bulk_process", "humannessScore": 10},
            headers=browser_headers,
        )
        data = response.json()
        assert data["allowed"] is False
        assert data["requiresCaptcha"] is True

        challenge = data["challenge"]
        response = client.post(
            "/api/security/check-action",
            json={
                "actionType": "bulk_process",
                "humannessScore": 10,
                "challengeId": challenge["challengeId"],
                "challengeAnswer": solve(challenge["question"]),
            },
            headers=browser_headers,
        )

        assert response.json()["allowed"] is True

    def test_check_action_signals(self, client, browser_headers):
        response = client.post(
            "/api/security/check-action",
            json={"actionType": "delete_all", "signals": {"mouseMovement": True, "keyboardActivity": True}},
            headers=browser_headers,
        )

        assert response.json()["allowed"] is True


class TestAnalyticsEndpoints:
    """Test /api/analytics routes."""

    def test_track_and_read(self, client, admin_headers, browser_headers):
        client.post("/api/analytics/track", json={"event": "tool_use", "data": {"tool": "merge"}}, headers=browser_headers)
        client.post("/api/analytics/track", json={"event": "pageview", "data": {"page": "/merge"}}, headers=browser_headers)

        response = client.get("/api/analytics", headers=admin_headers)

        assert response.status_code == 200
        analytics = response.json()["analytics"]
        assert analytics["total"]["toolUses"] == 1
        assert analytics["total"]["pageViews"] == 1
        assert analytics["topTools"] == [{"tool": "merge", "count": 1}]
        assert analytics["requestStats"]["totalRequests"] >= 2

    def test_visitor_header(self, client, admin_headers, browser_headers):
        for visitor in ("v-1", "v-1", "v-2"):
            client.post(
                "/api/analytics/track",
                json={"event": "session_start"},
                headers={**browser_headers, "X-Visitor-ID": visitor},
            )

        analytics = client.get("/api/analytics", headers=admin_headers).json()["analytics"]

        assert analytics["total"]["uniqueVisitors"] == 2

    def test_unknown_event_accepted(self, client, browser_headers):
        response = client.post("/api/analytics/track", json={"event": "mystery"}, headers=browser_headers)

        assert response.status_code == 200

    def test_track_requires_event(self, client, browser_headers):
        response = client.post("/api/analytics/track", json={"data": {}}, headers=browser_headers)

        assert response.status_code == 400

    def test_admin_only(self, client, browser_headers):
        assert client.get("/api/analytics", headers=browser_headers).status_code == 401
        assert client.delete("/api/analytics", headers=browser_headers).status_code == 401

    def test_export_import(self, client, admin_headers, browser_headers):
        client.post("/api/analytics/track", json={"event": "pageview"}, headers=browser_headers)

        response = client.get("/api/analytics/export", headers=admin_headers)

        assert response.status_code == 200
        assert response.headers["Content-Disposition"].startswith("attachment; filename=analytics_")
        exported = response.json()
        assert exported["totalPageViews"] == 1

        client.delete("/api/analytics", headers=admin_headers)
        response = client.post("/api/analytics/import", json={"data": exported}, headers=admin_headers)

        assert response.status_code == 200
        analytics = client.get("/api/analytics", headers=admin_headers).json()["analytics"]
        assert analytics["total"]["pageViews"] == 1

    @pytest.mark.parametrize("body", [{}, {"data": {"foo": 1}}, {"data": {"dailyStats": None}}])
    def test_import_invalid(self, client, admin_headers, body):
        response = client.post("/api/analytics/import", json=body, headers=admin_headers)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Invalid analytics data format"}

    def test_clear(self, client, admin_headers, browser_headers):
        client.post("/api/analytics/track", json={"event": "pageview"}, headers=browser_headers)

        response = client.delete("/api/analytics", headers=admin_headers)

        assert response.json()["message"] == "All analytics data cleared"
        analytics = client.get("/api/analytics", headers=admin_headers).json()["analytics"]
        assert analytics["total"]["pageViews"] == 0

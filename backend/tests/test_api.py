"""Tests for the HTTP API.

Tests cover:
- Health endpoints and correlation IDs
- Authentication requirement
- Stage / validate / apply / rollback round trip
- Error body format for engine errors
"""

from pathlib import Path

import pytest
from httpx import AsyncClient

from relayconf.constants import REDACTED
from relayconf.services.config_manager import ConfigManager
from relayconf.services.lock_manager import LockManager

from tests.conftest import PostfixStub


class TestHealthEndpoints:
    """Tests for the liveness and readiness endpoints."""

    @pytest.mark.asyncio
    async def test_liveness(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/status/live")
        assert response.status_code == 200
        assert response.json() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_readiness(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/status/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": True, "config_manager": True}


class TestCorrelationId:
    """Tests for the correlation ID middleware."""

    @pytest.mark.asyncio
    async def test_generated_when_missing(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/status/live")
        assert len(response.headers["X-Correlation-ID"]) == 8

    @pytest.mark.asyncio
    async def test_provided_id_is_preserved(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/status/live", headers={"X-Correlation-ID": "trace-123"})
        assert response.headers["X-Correlation-ID"] == "trace-123"

    @pytest.mark.asyncio
    async def test_apply_audit_carries_request_id(self, api_client: AsyncClient, manager: ConfigManager) -> None:
        await api_client.post("/api/config/staged", json={"parameters": {"myhostname": "mx.example.com"}})
        await api_client.post("/api/config/apply", headers={"X-Correlation-ID": "apply-42"})

        entry = (await manager.get_audit_log(action="apply"))[0]
        assert entry.correlation_id == "apply-42"


class TestAuthentication:
    """Every configuration endpoint requires an editor."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,path", [
        ("GET", "/api/config/current"),
        ("GET", "/api/config/staged"),
        ("POST", "/api/config/validate"),
        ("POST", "/api/config/apply"),
        ("GET", "/api/config/versions"),
    ])
    async def test_anonymous_rejected(self, api_client: AsyncClient, method: str, path: str) -> None:
        response = await api_client.request(method, path, headers={"X-Test-User": "anonymous"})

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "NOT_AUTHENTICATED"


class TestConfigFlow:
    """Tests for the staging and apply endpoints."""

    @pytest.mark.asyncio
    async def test_stage_validate_apply(self, api_client: AsyncClient, main_cf: Path) -> None:
        response = await api_client.post(
            "/api/config/staged", json={"parameters": {"relayhost": "[smtp.example.com]:587"}}
        )
        assert response.status_code == 200
        assert response.json() == [{
            "key": "relayhost", "category": "relay", "old_value": None, "new_value": "[smtp.example.com]:587",
        }]

        response = await api_client.post("/api/config/validate")
        assert response.json() == {"ok": True, "errors": [], "warnings": []}

        response = await api_client.post("/api/config/apply", json={"notes": "use smarthost"})
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Applied 1 change(s) as version 1",
            "applied_count": 1,
            "version_number": 1,
        }
        assert "relayhost = [smtp.example.com]:587" in main_cf.read_text()

        response = await api_client.get("/api/config/versions/1")
        body = response.json()
        assert body["status"] == "applied"
        assert body["notes"] == "use smarthost"
        assert body["parameters"]["relayhost"] == "[smtp.example.com]:587"

    @pytest.mark.asyncio
    async def test_current_masks_credentials(self, api_client: AsyncClient) -> None:
        await api_client.post("/api/config/staged", json={"parameters": {
            "relayhost": "[smtp.example.com]:587",
            "relay_username": "relayuser",
            "relay_password": "s3cret-relay-pw",
        }})
        staged = (await api_client.get("/api/config/staged")).json()
        assert {e["key"]: e["new_value"] for e in staged}["relay_password"] == REDACTED

        await api_client.post("/api/config/apply")
        current = (await api_client.get("/api/config/current")).json()

        assert current["relay_password"] == REDACTED
        assert "s3cret-relay-pw" not in (await api_client.get("/api/config/audit")).text

    @pytest.mark.asyncio
    async def test_validation_error_body(self, api_client: AsyncClient) -> None:
        response = await api_client.post(
            "/api/config/staged", json={"parameters": {"mynetworks": "999.999.0.0/8"}}
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert detail["details"]["errors"] == [
            {"field": "mynetworks", "message": "invalid CIDR notation at line 1: 999.999.0.0/8"},
        ]

    @pytest.mark.asyncio
    async def test_nothing_to_apply(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/api/config/apply")

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "NOTHING_TO_APPLY"

    @pytest.mark.asyncio
    async def test_busy(self, api_client: AsyncClient, settings) -> None:
        await api_client.post("/api/config/staged", json={"parameters": {"myhostname": "mx.example.com"}})
        other_process = LockManager(Path(settings.postfix.lock_file), timeout=0.1)

        async with other_process.acquire("apply"):
            response = await api_client.post("/api/config/apply")

        assert response.status_code == 423
        assert response.json()["detail"]["code"] == "BUSY"

    @pytest.mark.asyncio
    async def test_reload_failure(self, api_client: AsyncClient, postfix_stub: PostfixStub) -> None:
        await api_client.post("/api/config/staged", json={"parameters": {"myhostname": "mx.example.com"}})
        postfix_stub.fail_next_reload()

        response = await api_client.post("/api/config/apply")

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["code"] == "RELOAD_FAILED"
        assert detail["details"]["returncode"] == 1

    @pytest.mark.asyncio
    async def test_unstage_and_discard(self, api_client: AsyncClient) -> None:
        await api_client.post("/api/config/staged", json={"parameters": {
            "myhostname": "mx.example.com", "mydomain": "example.org",
        }})

        assert (await api_client.delete("/api/config/staged/myhostname")).json() == {"removed": "myhostname"}
        assert (await api_client.delete("/api/config/staged/myhostname")).status_code == 404
        assert (await api_client.delete("/api/config/staged")).json() == {"discarded": 1}

    @pytest.mark.asyncio
    async def test_rollback(self, api_client: AsyncClient) -> None:
        for name in ("mx1", "mx2"):
            await api_client.post("/api/config/staged", json={"parameters": {"myhostname": f"{name}.example.com"}})
            await api_client.post("/api/config/apply")

        response = await api_client.post("/api/config/versions/1/rollback")
        assert response.status_code == 200
        assert response.json()["version_number"] == 1

        versions = (await api_client.get("/api/config/versions")).json()
        assert [(v["version_number"], v["status"]) for v in versions] == [(2, "rolled_back"), (1, "applied")]

    @pytest.mark.asyncio
    async def test_unknown_version(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/config/versions/7")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

        response = await api_client.post("/api/config/versions/7/rollback")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_status(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/api/config/status")
        assert response.json() == {
            "apply_state": "idle",
            "locked": False,
            "staged_count": 0,
            "applied_version": None,
            "postfix_running": True,
        }

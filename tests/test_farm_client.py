"""
Tests for the farm HTTP client against a mocked transport.
"""

import json

import httpx
import pytest

from app.exceptions import FarmServiceError
from app.services.farm_client import FarmClient, credits_from_payload, normalize_status


def make_client(handler) -> FarmClient:
    return FarmClient(
        base_url="https://farm.test/api/",
        api_key="farm_key",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


class TestPayloadParsing:
    def test_status_mapping(self):
        assert normalize_status("workspace_detected") == "running"
        assert normalize_status("allocating") == "waiting_invite"
        assert normalize_status("completed") == "completed"

    def test_explicit_result_credits(self):
        assert credits_from_payload({"result": {"credits": 450}}, 5) == 450

    def test_camel_case_counter(self):
        assert credits_from_payload({"creditsEarned": 120}, 5) == 120

    def test_credit_log_entries(self):
        payload = {
            "logs": [
                {"type": "credit", "message": "+50 credits from invite"},
                {"type": "credit", "message": "bonus applied"},
                {"type": "info", "message": "+999 ignored"},
                "garbage",
            ]
        }
        assert credits_from_payload(payload, 5) == 55

    def test_empty_payload(self):
        assert credits_from_payload({}, 5) == 0


class TestFarmClient:
    async def test_create_sends_key_and_parses(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"farmId": "farm-77", "masterEmail": "m@farm.io"})

        result = await make_client(handler).create(1000)

        assert result.farm_id == "farm-77"
        assert result.queued is False
        assert result.master_email == "m@farm.io"
        assert str(seen[0].url) == "https://farm.test/api/farm/create"
        assert seen[0].headers["x-api-key"] == "farm_key"
        assert json.loads(seen[0].content) == {"credits": 1000}

    async def test_create_queued_upstream(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"farm_id": "farm-q", "queued": True, "queuePosition": 3})

        result = await make_client(handler).create(500)

        assert result.queued is True
        assert result.queue_position == 3

    async def test_create_without_farm_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"message": "ok"})

        with pytest.raises(FarmServiceError):
            await make_client(handler).create(500)

    async def test_non_2xx_carries_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="overloaded")

        with pytest.raises(FarmServiceError) as exc_info:
            await make_client(handler).create(500)
        assert exc_info.value.status_code == 503

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(FarmServiceError) as exc_info:
            await make_client(handler).status("farm-1")
        assert exc_info.value.status_code is None

    async def test_status_normalizes(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/farm/status/farm-1"
            return httpx.Response(
                200,
                json={"status": "workspace_detected", "creditsEarned": 200, "workspaceName": "ws-1"},
            )

        report = await make_client(handler).status("farm-1")

        assert report.status == "running"
        assert report.raw_status == "workspace_detected"
        assert report.credits_earned == 200
        assert report.workspace_name == "ws-1"

    async def test_cancel(self):
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(f"{request.method} {request.url.path}")
            return httpx.Response(200, json={"success": True})

        await make_client(handler).cancel("farm-9")

        assert calls == ["POST /api/farm/cancel/farm-9"]

    async def test_stock(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"total": 40, "activeWithBonus": 12})

        stock = await make_client(handler).stock()

        assert stock.total == 40
        assert stock.active == 12

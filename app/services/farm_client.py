"""
Farm API client - create / status / cancel / stock against the bot farm.

NO DICTIONARIES - Upstream JSON is parsed into typed domain results at this
boundary; nothing past the client sees raw payloads.
"""

import re
import time

import httpx
from structlog import get_logger

from app.config import settings
from app.exceptions import FarmServiceError
from app.models.domain import FarmCreateResult, FarmStatusReport, FarmStock
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation

logger = get_logger(__name__)

# Upstream status vocabulary that differs from ours
_STATUS_MAP = {
    "workspace_detected": "running",
    "allocating": "waiting_invite",
}

_CREDIT_LOG_PREFIX = re.compile(r"^\+(\d+)\s")


def normalize_status(raw_status: str) -> str:
    """Map an upstream status onto the local generation vocabulary."""
    return _STATUS_MAP.get(raw_status, raw_status)


def credits_from_payload(payload: dict[str, object], credits_per_log_entry: int) -> int:
    """
    Delivered credits reported by a status payload.

    Explicit counters win; otherwise credit-type log lines are summed, each
    worth its "+N " prefix or credits_per_log_entry.
    """
    result = payload.get("result")
    explicit = result.get("credits") if isinstance(result, dict) else None
    if explicit is None:
        explicit = payload.get("creditsEarned", payload.get("credits_earned"))
    if explicit:
        return max(int(explicit), 0)

    earned = 0
    logs = payload.get("logs")
    if isinstance(logs, list):
        for entry in logs:
            if not isinstance(entry, dict) or entry.get("type") != "credit":
                continue
            match = _CREDIT_LOG_PREFIX.match(str(entry.get("message") or ""))
            earned += int(match.group(1)) if match else credits_per_log_entry
    return earned


class FarmClient:
    """
    HTTP client for the external farm service.

    The farm is treated as an unreliable black box: any transport error or
    non-2xx response raises FarmServiceError carrying the upstream status.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.farm_api_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.farm_api_key
        self.timeout = timeout or settings.farm_api_timeout_seconds
        self._transport = transport

    async def _request(self, operation: str, method: str, path: str, **kwargs: object) -> dict[str, object]:
        """Make an authenticated request and return the decoded JSON body."""
        url = f"{self.base_url}{path}"
        headers = {"x-api-key": self.api_key, "Content-Type": "application/json"}
        started = time.perf_counter()

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, **kwargs)  # type: ignore[arg-type]
        except httpx.HTTPError as e:
            metrics.record_farm_request(operation, False, time.perf_counter() - started)
            logger.error("farm_request_failed", operation=operation, url=url, error=str(e))
            raise FarmServiceError(f"Farm {operation} unreachable: {e}") from e

        duration = time.perf_counter() - started
        if response.status_code >= 400:
            metrics.record_farm_request(operation, False, duration)
            logger.error(
                "farm_api_error",
                operation=operation,
                status=response.status_code,
                error=response.text[:500],
            )
            raise FarmServiceError(
                f"Farm {operation} failed: {response.status_code}",
                status_code=response.status_code,
            )

        metrics.record_farm_request(operation, True, duration)
        try:
            body = response.json()
        except ValueError as e:
            raise FarmServiceError(f"Farm {operation} returned invalid JSON") from e
        return body if isinstance(body, dict) else {}

    async def create(self, credits: int) -> FarmCreateResult:
        """Ask the farm to start delivering `credits` credits."""
        with trace_operation("farm.create", credits=credits):
            data = await self._request("create", "POST", "/farm/create", json={"credits": credits})

        farm_id = data.get("farmId") or data.get("farm_id")
        if not farm_id:
            raise FarmServiceError("Farm create response missing farmId")

        result = FarmCreateResult(
            farm_id=str(farm_id),
            queued=bool(data.get("queued", False)),
            master_email=data.get("masterEmail") or None,  # type: ignore[arg-type]
            queue_position=data.get("queuePosition") or None,  # type: ignore[arg-type]
            message=data.get("message") or None,  # type: ignore[arg-type]
        )
        logger.info(
            "farm_generation_created",
            farm_id=result.farm_id,
            credits=credits,
            queued=result.queued,
        )
        return result

    async def status(self, farm_id: str) -> FarmStatusReport:
        """Poll the farm for a generation's current status and delivered credits."""
        with trace_operation("farm.status", farm_id=farm_id):
            data = await self._request("status", "GET", f"/farm/status/{farm_id}")

        raw_status = str(data.get("status") or "")
        return FarmStatusReport(
            farm_id=farm_id,
            status=normalize_status(raw_status),
            raw_status=raw_status,
            credits_earned=credits_from_payload(data, settings.credits_per_log_entry),
            master_email=data.get("masterEmail") or None,  # type: ignore[arg-type]
            workspace_name=data.get("workspaceName") or None,  # type: ignore[arg-type]
            error_message=data.get("error") or data.get("message") or None,  # type: ignore[arg-type]
        )

    async def cancel(self, farm_id: str) -> None:
        """Cancel a generation upstream."""
        with trace_operation("farm.cancel", farm_id=farm_id):
            await self._request("cancel", "POST", f"/farm/cancel/{farm_id}")
        logger.info("farm_generation_cancelled", farm_id=farm_id)

    async def stock(self) -> FarmStock:
        """Upstream stock figures."""
        data = await self._request("stock", "GET", "/farm/stock")
        return FarmStock(
            total=int(data.get("total") or 0),  # type: ignore[call-overload]
            active=int(data.get("activeWithBonus", data.get("active")) or 0),  # type: ignore[call-overload]
        )

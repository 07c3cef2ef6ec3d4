"""Async HTTP client for the billing API.

Error responses are raised as the same ``BillingError`` subclasses the
server uses, so callers can tell retryable failures (``ProcessorUnavailable``)
from ones they must not retry (``InvalidPlan``, ``Unauthenticated``).
"""

import httpx
import structlog

from billing_sync.client.credentials import Credentials
from billing_sync.core.exceptions import (
    BillingError,
    InvalidPlan,
    NoSubscription,
    ProcessorUnavailable,
    StoreWriteFailed,
    Unauthenticated,
)

logger = structlog.get_logger(__name__)

_ERRORS_BY_CODE: dict[str, type[BillingError]] = {
    cls.code: cls for cls in (Unauthenticated, InvalidPlan, NoSubscription, ProcessorUnavailable, StoreWriteFailed)
}

_ERRORS_BY_STATUS: dict[int, type[BillingError]] = {
    401: Unauthenticated,
    400: InvalidPlan,
    404: NoSubscription,
}


def _raise_for_response(response: httpx.Response) -> None:
    if response.is_success:
        return

    try:
        body = response.json()
    except ValueError:
        body = {}
    detail = body.get("detail") if isinstance(body, dict) else None
    code = body.get("code") if isinstance(body, dict) else None

    error_class = _ERRORS_BY_CODE.get(code) or _ERRORS_BY_STATUS.get(response.status_code)
    if error_class is None:
        error_class = ProcessorUnavailable if response.status_code >= 500 else BillingError
    raise error_class(detail if isinstance(detail, str) else None)


class BillingClient:
    """Client for the authenticated billing endpoints.

    Usage::

        async with BillingClient("https://api.flow247.com") as client:
            url = await client.start_checkout(credentials, plan_id="starter")
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/api",
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "BillingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, credentials: Credentials, **kwargs) -> dict:
        try:
            response = await self._http.request(method, path, headers=credentials.authorization_header(), **kwargs)
        except httpx.TransportError as exc:
            logger.warning("billing_api_unreachable", path=path, error=str(exc))
            raise ProcessorUnavailable(f"Billing API unreachable: {exc}") from exc
        _raise_for_response(response)
        return response.json()

    async def start_checkout(
        self,
        credentials: Credentials,
        *,
        plan_id: str,
        billing_cycle: str = "monthly",
        price_reference: str | None = None,
    ) -> str:
        body = {"plan_id": plan_id, "billing_cycle": billing_cycle, "price_reference": price_reference}
        data = await self._request("POST", "/billing/checkout", credentials, json=body)
        return data["checkout_url"]

    async def open_portal(self, credentials: Credentials) -> str:
        data = await self._request("POST", "/billing/portal", credentials, json={})
        return data["portal_url"]

    async def get_status(self, credentials: Credentials) -> dict:
        return await self._request("GET", "/billing/status", credentials)

"""
Async HTTP client for the Tixr Studio REST API.

All calls are signed (see :mod:`integrations.tixr.signing`) and go through a
shared ``httpx.AsyncClient``.  Timeouts, network errors, HTTP 429 and 5xx are
retried with backoff; 404 on single-entity lookups means "not found" and is
returned as ``None``.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

import httpx

from integrations.common.logging import StructuredLogger, setup_integrations_logger
from integrations.common.retry import (
    RetryPolicy,
    exponential_backoff,
    linear_backoff,
    retry_async,
)
from integrations.tixr.signing import DEFAULT_SIGNING_PREFIX, Endpoint, RequestSigner

if TYPE_CHECKING:
    from integrations.tixr.config import TixrSyncConfig


class TixrApiError(RuntimeError):
    """Exception carrying structured metadata about Tixr API failures."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.request_id = request_id
        self.details = details or {}
        self.transient = transient

    def as_dict(self) -> Dict[str, Any]:
        """Return a JSON-serialisable representation."""
        payload: Dict[str, Any] = {
            "message": str(self),
            "status": self.status,
            "code": self.code,
            "request_id": self.request_id,
        }
        payload.update(self.details)
        return {k: v for k, v in payload.items() if v not in (None, "")}


class PagePolicy(str, Enum):
    """What a paginated fetch does when a page keeps failing."""

    PARTIAL = "partial"
    RAISE = "raise"


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TixrApiError) and exc.transient


class TixrApiClient:
    """Wrapper around the Tixr group API."""

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}
    DEFAULT_PAGE_SIZE = 100
    ATTENDANCE_TIMEOUT = 5.0

    def __init__(
        self,
        *,
        base_url: str,
        cpk: str,
        secret_key: str,
        group_id: str,
        signing_prefix: str = DEFAULT_SIGNING_PREFIX,
        logger: Optional[StructuredLogger] = None,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_factor: float = 1.0,
        page_delay: float = 0.25,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.group_id = str(group_id)
        self.signing_prefix = signing_prefix
        self.timeout = timeout
        self.max_retries = max_retries
        self.page_delay = page_delay
        self.logger = logger or setup_integrations_logger("tixr")
        self.signer = RequestSigner(cpk, secret_key)
        self._cpk_fingerprint = self._mask_token(cpk)
        self._sleep = sleep
        self.policy = RetryPolicy(
            max_attempts=max_retries,
            backoff=exponential_backoff(backoff_factor),
            should_retry=_is_transient,
        )
        # Order pages back off 2s, 4s, ... before the event is given up on.
        self.orders_policy = RetryPolicy(
            max_attempts=max_retries,
            backoff=linear_backoff(2.0 * backoff_factor),
            should_retry=_is_transient,
        )
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_config(cls, config: "TixrSyncConfig", **kwargs: Any) -> "TixrApiClient":
        return cls(
            base_url=config.tixr_base_url,
            cpk=config.tixr_cpk,
            secret_key=config.tixr_secret_key,
            group_id=config.tixr_group_id,
            signing_prefix=config.tixr_signing_prefix,
            timeout=config.api_timeout,
            max_retries=config.api_max_retries,
            page_delay=config.page_delay_seconds,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "TixrApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def endpoint(self, path: str) -> Endpoint:
        return Endpoint(path, signing_prefix=self.signing_prefix)

    # --------------------------------------------------------------------- #
    # Public endpoints
    # --------------------------------------------------------------------- #
    async def list_events(self, *, page_size: int = DEFAULT_PAGE_SIZE) -> List[Dict[str, Any]]:
        """All events of the group. Failure is fatal for the caller."""
        events = await self._collect_paginated(
            self.endpoint(f"/groups/{self.group_id}/events"),
            page_size=page_size,
            on_failure=PagePolicy.RAISE,
        )
        self.logger.info(
            "Fetched events from Tixr API",
            metrics={"endpoint": "events", "records": len(events)},
        )
        return events

    async def get_event(self, event_id: Any) -> Optional[Dict[str, Any]]:
        payload = await self._request(
            self.endpoint(f"/groups/{self.group_id}/events/{event_id}"),
            allow_404=True,
        )
        return self._extract_single_item(payload)

    async def list_event_orders(
        self,
        event_id: Any,
        *,
        status: Optional[str] = "COMPLETE",
        page_size: int = DEFAULT_PAGE_SIZE,
        on_failure: PagePolicy = PagePolicy.RAISE,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {}
        if status:
            params["status"] = status
        orders = await self._collect_paginated(
            self.endpoint(f"/groups/{self.group_id}/events/{event_id}/orders"),
            params=params,
            page_size=page_size,
            on_failure=on_failure,
            policy=self.orders_policy,
        )
        self.logger.info(
            "Fetched event orders from Tixr API",
            metrics={"endpoint": "event_orders", "event_id": event_id, "records": len(orders)},
        )
        return orders

    async def get_order(self, order_id: Any) -> Optional[Dict[str, Any]]:
        payload = await self._request(
            self.endpoint(f"/groups/{self.group_id}/orders/{order_id}"),
            allow_404=True,
        )
        return self._extract_single_item(payload)

    async def list_user_orders(
        self, user_id: Any, *, page_size: int = DEFAULT_PAGE_SIZE
    ) -> List[Dict[str, Any]]:
        """Orders placed by one fan; best-effort."""
        return await self._collect_paginated(
            self.endpoint(f"/groups/{self.group_id}/fans/{user_id}/orders"),
            page_size=page_size,
            on_failure=PagePolicy.PARTIAL,
        )

    async def list_event_fans(
        self, event_id: Any, *, page_size: int = DEFAULT_PAGE_SIZE
    ) -> List[Dict[str, Any]]:
        """Fans attached to an event; best-effort."""
        return await self._collect_paginated(
            self.endpoint(f"/groups/{self.group_id}/events/{event_id}/fans"),
            page_size=page_size,
            on_failure=PagePolicy.PARTIAL,
        )

    async def get_fan(self, user_id: Any) -> Optional[Dict[str, Any]]:
        payload = await self._request(
            self.endpoint(f"/groups/{self.group_id}/fans/{user_id}"),
            allow_404=True,
        )
        return self._extract_single_item(payload)

    async def get_attendance(self, event_id: Any, serial: str) -> Optional[Dict[str, Any]]:
        """Attendance snapshot of one ticket; ``None`` when the serial is unknown."""
        payload = await self._request(
            self.endpoint(f"/events/{event_id}/attendance/{serial}"),
            allow_404=True,
            timeout=self.ATTENDANCE_TIMEOUT,
        )
        return self._extract_single_item(payload)

    async def get_attendance_transactions(
        self, event_id: Any, serial: str
    ) -> List[Dict[str, Any]]:
        """Check-in transaction log of one ticket (empty when unknown)."""
        payload = await self._request(
            self.endpoint(f"/events/{event_id}/attendance/{serial}/transactions"),
            allow_404=True,
        )
        return self._extract_items(payload)

    # --------------------------------------------------------------------- #
    # Internal helpers
    # --------------------------------------------------------------------- #
    async def _collect_paginated(
        self,
        endpoint: Endpoint,
        *,
        params: Optional[Dict[str, Any]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        on_failure: PagePolicy = PagePolicy.RAISE,
        policy: Optional[RetryPolicy] = None,
    ) -> List[Dict[str, Any]]:
        """Collect pages until an empty page or one shorter than ``page_size``."""
        items: List[Dict[str, Any]] = []
        page = 1

        while True:
            page_params = dict(params or {})
            page_params["page_number"] = page
            page_params["page_size"] = page_size

            try:
                payload = await self._request(endpoint, params=page_params, policy=policy)
            except TixrApiError as exc:
                if on_failure is PagePolicy.RAISE:
                    raise
                self.logger.warning(
                    "Pagination stopped early, returning partial results",
                    metrics={
                        "path": endpoint.path,
                        "page": page,
                        "records": len(items),
                        **exc.as_dict(),
                    },
                )
                return items

            current_items = self._extract_items(payload)
            if not current_items:
                break
            items.extend(current_items)
            if len(current_items) < page_size:
                break
            page += 1
            if self.page_delay:
                await self._sleep(self.page_delay)

        return items

    def _request_metrics(
        self, endpoint: Endpoint, params: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {
            "method": "GET",
            "path": endpoint.signing_path,
            "cpk_fp": self._cpk_fingerprint,
        }
        if params:
            metrics["params"] = {k: params[k] for k in sorted(params)}
        return metrics

    @staticmethod
    def _mask_token(token: Optional[str]) -> str:
        if not token:
            return "<empty>"
        compact = token.strip()
        if len(compact) <= 8:
            return f"{compact[:2]}***"
        return f"{compact[:4]}***{compact[-4:]}"

    def _build_error(self, endpoint: Endpoint, response: httpx.Response) -> TixrApiError:
        request_id = (
            response.headers.get("X-Request-ID")
            or response.headers.get("X-Request-Id")
            or response.headers.get("X-Trace-Id")
        )
        body_preview = response.text[:512] if response.text else ""
        code: Optional[str] = None
        message: Optional[str] = None
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            raw_code = payload.get("code") or payload.get("error")
            if raw_code is not None:
                code = str(raw_code)
            message = payload.get("message") or payload.get("detail")

        return TixrApiError(
            f"HTTP {response.status_code} for {endpoint.signing_path}",
            status=response.status_code,
            code=code,
            request_id=request_id,
            details={"message_detail": message or body_preview},
            transient=response.status_code in self.RETRYABLE_STATUS,
        )

    async def _request(
        self,
        endpoint: Endpoint,
        *,
        params: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
        timeout: Optional[float] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """Signed GET with structured logging and retry/backoff."""
        request_metrics = self._request_metrics(endpoint, params)
        effective_timeout = timeout if timeout is not None else self.timeout

        async def _once() -> Any:
            # A fresh timestamp (and signature) for every attempt.
            signed = self.signer.sign(endpoint, params)
            url = signed.url(self.base_url, endpoint.signing_path)
            try:
                response = await self._http.get(url, timeout=effective_timeout)
            except httpx.TimeoutException as err:
                raise TixrApiError(
                    f"Timeout while calling {endpoint.signing_path}",
                    details={"error": err.__class__.__name__},
                    transient=True,
                ) from err
            except httpx.TransportError as err:
                raise TixrApiError(
                    f"Network error while calling {endpoint.signing_path}: {err}",
                    details={"error": err.__class__.__name__},
                    transient=True,
                ) from err

            if response.status_code == 404 and allow_404:
                return None
            if response.status_code >= 400:
                raise self._build_error(endpoint, response)
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as err:
                raise TixrApiError(
                    "Invalid JSON response",
                    status=response.status_code,
                    details={"body_preview": response.text[:512]},
                ) from err

        try:
            return await retry_async(
                _once,
                policy or self.policy,
                label=endpoint.signing_path,
                logger=self.logger,
                sleep=self._sleep,
            )
        except TixrApiError as exc:
            self.logger.error(
                "Tixr API request failed",
                metrics={**request_metrics, **exc.as_dict()},
            )
            raise

    @staticmethod
    def _extract_items(payload: Any) -> List[Dict[str, Any]]:
        """Normalise the API payload into a list of dictionaries."""
        if payload is None:
            return []
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, dict):
            for key in ("data", "results"):
                if isinstance(payload.get(key), list):
                    return [item for item in payload[key] if isinstance(item, dict)]
        return []

    @staticmethod
    def _extract_single_item(payload: Any) -> Optional[Dict[str, Any]]:
        """Single-entity endpoints sometimes answer with a one-element array."""
        if isinstance(payload, list):
            for item in payload:
                if isinstance(item, dict):
                    return item
            return None
        if isinstance(payload, dict):
            data = payload.get("data")
            if isinstance(data, dict):
                return data
            return payload
        return None

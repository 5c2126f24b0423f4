"""
FastAPI service receiving Tixr webhooks.

Routes:

* ``POST /webhook/event``  ``{event_id, action}``: UNPUBLISH/REMOVED deletes the
  event, any other action re-fetches it from Tixr and upserts it.
* ``POST /webhook/order``  ``{order_id, transaction_type}``: re-fetches the
  order and upserts its rows.
* ``POST /webhook/ticket`` ``{event_id, serial_id}``: replays the check-in log
  of every ticket in the orders holding the serial.
* ``GET /health`` and ``GET /``.

With ``WEBHOOK_SECRET`` set, requests must carry a matching
``X-Webhook-Secret`` header.  With ``ALLOWED_IPS`` set, the first
``X-Forwarded-For`` hop (or the peer address) must be listed.  With neither,
every request is accepted and logged as unverified.
"""

from __future__ import annotations

import hmac
import os
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from integrations.common.ch import get_client_from_config
from integrations.common.logging import setup_integrations_logger
from integrations.common.time import to_utc_iso, utcnow
from integrations.tixr.client import TixrApiClient, TixrApiError
from integrations.tixr.config import ConfigError, TixrSyncConfig
from integrations.tixr.jobs import TixrSyncJobs
from integrations.tixr.store import StoreError, TixrStore

logger = setup_integrations_logger("tixr")

REMOVAL_ACTIONS = {"UNPUBLISH", "REMOVED"}
SECRET_HEADER = "X-Webhook-Secret"

Identifier = Union[int, str]


class EventWebhook(BaseModel):
    event_id: Optional[Identifier] = None
    action: Optional[str] = None


class OrderWebhook(BaseModel):
    order_id: Optional[Identifier] = None
    transaction_type: Optional[str] = None


class TicketWebhook(BaseModel):
    event_id: Optional[Identifier] = None
    serial_id: Optional[str] = None
    action: Optional[str] = None


class WebhookRejected(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    config: TixrSyncConfig,
    jobs: TixrSyncJobs,
    *,
    close_client: bool = False,
) -> FastAPI:
    """Build the webhook application around an existing job runner."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if config.webhook_insecure:
            logger.warning(
                "Webhook verification disabled: set WEBHOOK_SECRET or ALLOWED_IPS",
            )
        yield
        if close_client:
            await jobs.client.aclose()

    app = FastAPI(title="Tixr Webhook Listener", lifespan=lifespan)

    @app.exception_handler(WebhookRejected)
    async def _rejected(request: Request, exc: WebhookRejected) -> JSONResponse:
        return _error(exc.status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Rejected webhook with invalid body", metrics={"path": request.url.path})
        return _error(400, "Invalid request body")

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled webhook error", metrics={"path": request.url.path, "error": str(exc)})
        return _error(500, "Internal server error")

    async def verify_request(request: Request) -> None:
        ip = client_ip(request)
        if config.webhook_secret:
            provided = request.headers.get(SECRET_HEADER, "")
            if not hmac.compare_digest(provided.encode(), config.webhook_secret.encode()):
                logger.error("Rejected webhook with bad secret", metrics={"ip": ip, "path": request.url.path})
                raise WebhookRejected(401, "Unauthorized")
        if config.allowed_ips and ip not in config.allowed_ips:
            logger.error("Rejected webhook from unauthorized IP", metrics={"ip": ip, "path": request.url.path})
            raise WebhookRejected(403, "Forbidden")
        if config.webhook_insecure:
            logger.warning(
                "Unverified webhook request",
                metrics={
                    "ip": ip,
                    "path": request.url.path,
                    "user_agent": request.headers.get("user-agent", "Unknown"),
                },
            )

    @app.post("/webhook/event", dependencies=[Depends(verify_request)])
    async def event_webhook(payload: EventWebhook) -> Any:
        if not payload.event_id:
            logger.warning("Event webhook without event_id ignored")
            return {"success": True, "message": "No event_id, ignored"}

        action = (payload.action or "UPDATE").upper()
        logger.info("Processing event webhook", metrics={"event_id": payload.event_id, "action": action})
        try:
            if action in REMOVAL_ACTIONS:
                await jobs.remove_event(payload.event_id)
                logger.info("Event removed", metrics={"event_id": payload.event_id})
                return {"success": True, "message": "Event removed"}

            row = await jobs.refresh_event(payload.event_id)
        except (TixrApiError, StoreError, ValueError) as exc:
            logger.exception("Event webhook failed", metrics={"event_id": payload.event_id, "error": str(exc)})
            return _error(500, "Internal server error")

        if row is None:
            logger.error("Event not found in Tixr", metrics={"event_id": payload.event_id})
            return _error(404, "Event not found")
        logger.info(
            "Event synced",
            metrics={"event_id": row["event_id"], "status": row["event_status"], "artist": row["event_artist"]},
        )
        return {
            "success": True,
            "message": "Event synced",
            "event": {"id": row["event_id"], "name": row["event_name"], "status": row["event_status"]},
        }

    @app.post("/webhook/order", dependencies=[Depends(verify_request)])
    async def order_webhook(payload: OrderWebhook) -> Any:
        if not payload.order_id:
            logger.warning("Order webhook without order_id ignored")
            return {"success": True, "message": "No order_id, ignored"}

        logger.info(
            "Processing order webhook",
            metrics={"order_id": payload.order_id, "transaction_type": payload.transaction_type},
        )
        try:
            rows = await jobs.refresh_order(payload.order_id)
        except (TixrApiError, StoreError) as exc:
            logger.exception("Order webhook failed", metrics={"order_id": payload.order_id, "error": str(exc)})
            return _error(500, "Internal server error")

        if rows is None:
            logger.error("Order not found in Tixr", metrics={"order_id": payload.order_id})
            return _error(404, "Order not found")
        return {"success": True, "message": "Order synced", "rows": rows}

    @app.post("/webhook/ticket", dependencies=[Depends(verify_request)])
    async def ticket_webhook(payload: TicketWebhook) -> Any:
        if not payload.event_id or not payload.serial_id:
            logger.warning("Ticket webhook without event_id or serial_id ignored")
            return {"success": True, "message": "Incomplete data, ignored"}

        logger.info(
            "Processing ticket webhook",
            metrics={"event_id": payload.event_id, "serial": payload.serial_id, "action": payload.action},
        )
        try:
            result = await jobs.recompute_ticket(payload.event_id, payload.serial_id)
        except (TixrApiError, StoreError, ValueError) as exc:
            logger.exception(
                "Ticket webhook failed",
                metrics={"event_id": payload.event_id, "serial": payload.serial_id, "error": str(exc)},
            )
            return _error(500, "Internal server error")

        if not result["orders"]:
            return {"success": True, "message": "Serial not found in orders"}
        return {"success": True, "message": "Attendance updated", **result}

    @app.get("/health")
    async def health() -> Any:
        return {
            "status": "healthy",
            "service": "Tixr Webhook Server",
            "verification": "disabled" if config.webhook_insecure else "enabled",
            "timestamp": to_utc_iso(utcnow()),
        }

    @app.get("/")
    async def root() -> Any:
        return {
            "service": "Tixr Webhook Listener",
            "status": "running",
            "endpoints": [
                "POST /webhook/event - Event updates from Tixr",
                "POST /webhook/order - Order updates from Tixr",
                "POST /webhook/ticket - Ticket check-in/out updates",
                "GET /health - Health check",
            ],
            "timestamp": to_utc_iso(utcnow()),
        }

    return app


def main() -> None:
    try:
        config = TixrSyncConfig.load(os.getenv("TIXR_ENV_FILE"))
    except ConfigError as exc:
        logger.error("[tixr] Webhook configuration error", metrics={"error": str(exc)})
        raise SystemExit(1)

    store = TixrStore(get_client_from_config(config), dry_run=config.dry_run, logger=logger)
    client = TixrApiClient.from_config(config, logger=logger)
    jobs = TixrSyncJobs.from_config(config, client, store, logger=logger)
    app = create_app(config, jobs, close_client=True)

    port = int(os.getenv("PORT", "3000"))
    logger.info("Starting Tixr webhook server", metrics={"port": port})
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=port)


if __name__ == "__main__":
    main()

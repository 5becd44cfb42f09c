"""FastAPI control surface for account sync sessions."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status as http_status
from pydantic import BaseModel, Field

from ..core.config import AccountCredentials, AppSettings, load_app_settings
from ..core.errors import AlreadyRunning
from ..core.logging import configure_logging
from ..core.models import SessionStatus
from ..services import OneboxServices, build_services

LOGGER = logging.getLogger(__name__)

_ENV_FILE_OVERRIDE_VAR = "ONEBOX_ENV_FILE"
_DEFAULT_ENV_FILE = Path(".env")
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class StartAccountRequest(BaseModel):
    """Credentials posted to start syncing an account."""

    host: str = Field(min_length=1)
    port: int = Field(default=993, gt=0, lt=65536)
    user: str = Field(min_length=1)
    secret: str = Field(min_length=1, repr=False)
    use_encryption: bool = True
    mailbox: str = "INBOX"

    def to_credentials(self, account_id: str) -> AccountCredentials:
        return AccountCredentials(
            account_id=account_id,
            host=self.host,
            port=self.port,
            user=self.user,
            secret=self.secret,
            use_encryption=self.use_encryption,
            mailbox=self.mailbox,
        )


def serialize_status(status: SessionStatus) -> dict[str, Any]:
    """Return the JSON shape reported for a session."""
    return {
        "accountId": status.account_id,
        "connectionStatus": status.connection_status.value,
        "isConnected": status.is_connected,
        "reconnectAttempts": status.reconnect_attempts,
        "reconnectDelay": status.reconnect_delay,
        "lastError": status.last_error,
    }


def create_app(
    settings: AppSettings | None = None,
    *,
    services: OneboxServices | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if services is not None:
        app_services = services
    else:
        app_settings = settings or load_app_settings(env_file=_resolve_env_file())
        configure_logging(app_settings.logging)
        app_services = build_services(app_settings)
    manager = app_services.manager

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        LOGGER.info("Shutting down; stopping all account sessions")
        await app_services.close()

    app = FastAPI(title="Onebox Sync", lifespan=lifespan)
    app.state.services = app_services

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Report liveness and the number of managed accounts."""
        return {"status": "ok", "accounts": len(manager)}

    @app.get("/api/accounts")
    async def list_accounts() -> dict[str, Any]:
        statuses = sorted(manager.list_statuses(), key=lambda item: item.account_id)
        return {"accounts": [serialize_status(item) for item in statuses]}

    @app.post(
        "/api/accounts/stop-all",
        status_code=http_status.HTTP_200_OK,
    )
    async def stop_all_accounts() -> dict[str, Any]:
        stopped = len(manager)
        await manager.stop_all()
        return {"success": True, "stopped": stopped}

    @app.post(
        "/api/accounts/{account_id}/start",
        status_code=http_status.HTTP_202_ACCEPTED,
    )
    async def start_account(
        account_id: str, payload: StartAccountRequest
    ) -> dict[str, Any]:
        """Start syncing ``account_id``; progress is reported through status."""
        try:
            started = await manager.start_account(
                account_id, payload.to_credentials(account_id)
            )
        except AlreadyRunning as exc:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT, detail=str(exc)
            ) from exc
        return serialize_status(started)

    @app.post("/api/accounts/{account_id}/stop")
    async def stop_account(account_id: str) -> dict[str, Any]:
        await manager.stop_account(account_id)
        return {"success": True, "accountId": account_id}

    @app.get("/api/accounts/{account_id}/status")
    async def account_status(account_id: str) -> dict[str, Any]:
        current = manager.get_status(account_id)
        if current is None:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Account '{account_id}' is not running",
            )
        return serialize_status(current)

    @app.get("/api/emails")
    async def list_emails(request: Request) -> dict[str, Any]:
        """Return stored messages newest first, optionally per account or category."""
        return _search(request, query=None)

    @app.get("/api/emails/search")
    async def search_emails(request: Request) -> dict[str, Any]:
        return _search(request, query=request.query_params.get("q"))

    @app.get("/api/emails/{composite_id}")
    async def get_email(composite_id: str) -> dict[str, Any]:
        document = app_services.sink.get_document(composite_id)
        if document is None:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Email '{composite_id}' is not indexed",
            )
        return document

    def _search(request: Request, *, query: str | None) -> dict[str, Any]:
        params = request.query_params
        offset = _parse_offset(params.get("offset"))
        limit = _parse_limit(params.get("limit"), DEFAULT_PAGE_SIZE)
        page = app_services.sink.search_documents(
            query=query,
            account_id=params.get("account") or None,
            category=params.get("category") or None,
            offset=offset,
            limit=limit,
        )
        return {
            "hits": page.hits,
            "total": page.total,
            "offset": offset,
            "limit": limit,
        }

    return app


def _parse_limit(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return max(1, min(value, MAX_PAGE_SIZE))


def _parse_offset(raw: str | None) -> int:
    if raw is None:
        return 0
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 0
    return max(0, value)


def _resolve_env_file() -> Path | None:
    override = os.getenv(_ENV_FILE_OVERRIDE_VAR)
    if override:
        return Path(override)
    return _DEFAULT_ENV_FILE if _DEFAULT_ENV_FILE.exists() else None


__all__ = ["StartAccountRequest", "create_app", "serialize_status"]

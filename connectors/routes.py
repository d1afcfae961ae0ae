"""
Wearable API routes — OAuth initiate/callback, disconnect, sweep, audit.

Route prefix: /api/v1/wearables
"""

from __future__ import annotations

import hmac
import html
import json
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from auth.dependencies import get_current_user_id
from connectors.audit import RequestMeta
from connectors.errors import ConfigurationError, ConnectorError, RateLimited
from connectors.manager import CredentialManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["wearables"])


# ── Request / response schemas ─────────────────────────────────────────


class AuthActionRequest(BaseModel):
    action: Literal["initiate", "callback"]
    code: Optional[str] = None
    state: Optional[str] = None


class DisconnectRequest(BaseModel):
    connection_id: str


# ── Dependencies ───────────────────────────────────────────────────────


def get_credential_manager(request: Request) -> CredentialManager:
    manager = getattr(request.app.state, "credential_manager", None)
    if manager is None:
        raise ConfigurationError()
    return manager


def request_meta(request: Request) -> RequestMeta:
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return RequestMeta(ip_address=ip, user_agent=request.headers.get("user-agent"))


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers(
    manager: CredentialManager = Depends(get_credential_manager),
) -> List[Dict[str, Any]]:
    """List wearable providers and whether they are configured."""
    return manager.registry.list_providers()


@router.get("/connections")
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    manager: CredentialManager = Depends(get_credential_manager),
) -> List[Dict[str, Any]]:
    """List the authenticated user's wearable connections (no tokens)."""
    return await manager.list_connections(user_id)


@router.post("/{provider}/auth")
async def auth_action(
    provider: str,
    body: AuthActionRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    manager: CredentialManager = Depends(get_credential_manager),
) -> Dict[str, Any]:
    """
    Action envelope for the OAuth flow.

    ``{"action": "initiate"}`` returns the consent URL; the frontend opens it.
    ``{"action": "callback", "code", "state"}`` finishes the flow.
    """
    if body.action == "initiate":
        url = await manager.initiate(user_id, provider)
        return {"authorization_url": url}

    summary = await manager.complete(
        user_id, provider, body.code, body.state, meta=request_meta(request)
    )
    return {"success": summary.success, "connection_id": str(summary.connection_id)}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    manager: CredentialManager = Depends(get_credential_manager),
) -> HTMLResponse:
    """
    OAuth callback — the provider redirects the browser here after consent.

    No bearer token arrives on a browser redirect; the single-use state
    identifies the user.  Returns a small HTML page that notifies the opener
    window and auto-closes.
    """
    if error:
        logger.info("Provider %s redirected with error=%s", provider, error)
        return HTMLResponse(
            content=_callback_html(success=False, message="Authorization was declined", provider=provider),
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    try:
        await manager.complete_redirect(provider, code, state, meta=request_meta(request))
    except ConnectorError as exc:
        logger.info("OAuth redirect for %s failed: %s", provider, exc.error_code)
        return HTMLResponse(
            content=_callback_html(success=False, message=exc.message, provider=provider),
            status_code=exc.status_code,
        )

    display_name = manager.registry.require(provider).display_name
    return HTMLResponse(
        content=_callback_html(success=True, message=f"Connected {display_name}", provider=provider),
        status_code=status.HTTP_200_OK,
    )


@router.post("/disconnect")
async def disconnect(
    body: DisconnectRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    manager: CredentialManager = Depends(get_credential_manager),
) -> Dict[str, Any]:
    """Revoke at the provider (best effort) and delete the connection."""
    success = await manager.revoke(user_id, body.connection_id, meta=request_meta(request))
    return {"success": success}


@router.get("/audit")
async def audit_log(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    manager: CredentialManager = Depends(get_credential_manager),
) -> List[Dict[str, Any]]:
    """Last ``limit`` credential lifecycle events for the user."""
    return await manager.recent_audit(user_id, limit)


@router.post("/proactive-refresh")
async def proactive_refresh(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    manager: CredentialManager = Depends(get_credential_manager),
) -> Dict[str, Any]:
    """Scheduled sweep: rotate tokens expiring soon and drop abandoned OAuth states."""
    expected = manager.settings.cron_secret
    if not expected:
        raise ConfigurationError()
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")

    summary = await manager.proactive_sweep()
    purged = await manager.purge_expired_states()
    return {**summary.as_dict(), "purged_states": purged}


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Page shown in the OAuth popup after the redirect.
    Posts the outcome to the opener window and auto-closes.
    """
    status_text = "Connected" if success else "Connection failed"
    color = "#16a34a" if success else "#dc2626"
    payload = json.dumps({"type": "wearable-oauth-callback", "provider": provider, "success": success})
    payload = payload.replace("</", "<\\/")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{html.escape(provider)} — {status_text}</title>
    <style>
        body {{ font-family: system-ui, sans-serif; display: flex; align-items: center;
               justify-content: center; height: 100vh; margin: 0; }}
        h2 {{ color: {color}; }}
    </style>
</head>
<body>
    <div>
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <p>This window will close automatically…</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({payload}, "*");
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""


# ── Error rendering ────────────────────────────────────────────────────


async def _connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    if exc.status_code >= 500:
        logger.error("%s on %s [request_id=%s]", exc.error_code, request.url.path, request_id)
    body = exc.to_dict()
    if request_id:
        body["request_id"] = request_id
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ConnectorError, _connector_error_handler)

"""
Radar Gateway Server

FastAPI surface over the safety pipeline.

Endpoints:
- POST /v1/messages/admit            admission + content gate for one message
- POST /v1/messages/sent             audit an outbound reply
- POST /v1/auth/events               record an authentication outcome
- POST /v1/tools/{tool_name}/invoke  permission gate + bounded executor
- /v1/permissions/...                allowlist administration
- /v1/audit/...                      audit trail, incidents, retention purge
- GET  /v1/stats, /v1/health, /metrics

Administrative endpoints are NOT authenticated here; put the server behind
whatever decides who may grant permissions.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .audit_log import AuditSeverity
from .config import GatewayConfig
from .errors import (
    RADAR_E_BAD_REQUEST,
    RADAR_E_INTERNAL,
    RADAR_E_PERMISSION_DENIED,
    RADAR_E_RATE_LIMITED,
    RADAR_E_TOOL_ERROR,
    RADAR_E_TOOL_TIMEOUT,
    RADAR_E_TOOL_UNKNOWN,
    RADAR_E_VALIDATION_FAILED,
    GatewayError,
    gateway_error,
)
from .http_tool import HttpToolConnector
from .metrics import instrument_fastapi
from .pipeline import SafetyPipeline

logger = logging.getLogger("radar_gateway")

_STATUS_BY_CODE: Dict[Optional[str], int] = {
    None: 200,
    RADAR_E_RATE_LIMITED: 429,
    RADAR_E_VALIDATION_FAILED: 400,
    RADAR_E_PERMISSION_DENIED: 403,
    RADAR_E_TOOL_UNKNOWN: 404,
    RADAR_E_TOOL_ERROR: 502,
    RADAR_E_TOOL_TIMEOUT: 504,
    RADAR_E_INTERNAL: 500,
}


# ---------------------------
# Request Models
# ---------------------------

class AdmitRequest(BaseModel):
    caller_id: int
    text: str


class MessageSentRequest(BaseModel):
    caller_id: int
    text: str


class AuthEventRequest(BaseModel):
    caller_id: int
    ok: bool
    username: Optional[str] = None
    reason: Optional[str] = None


class ToolInvokeRequest(BaseModel):
    caller_id: int
    arguments: Dict[str, Any] = Field(default_factory=dict)


class GrantRequest(BaseModel):
    caller_id: int
    tool_name: str = Field(min_length=1)
    granted_by: Optional[int] = None
    notes: Optional[str] = None


class RevokeRequest(BaseModel):
    caller_id: int
    tool_name: str = Field(min_length=1)
    revoked_by: Optional[int] = None


class BulkGrantRequest(BaseModel):
    caller_id: int
    tool_names: List[str]
    granted_by: Optional[int] = None


class PurgeRequest(BaseModel):
    days: Optional[int] = Field(default=None, ge=0)


def _store_unavailable(what: str) -> GatewayError:
    return gateway_error(RADAR_E_INTERNAL, f"{what} failed; store unavailable", retryable=True, http_status=503)


def create_app(pipeline: Optional[SafetyPipeline] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as radar_version

    if pipeline is None:
        pipeline = SafetyPipeline(GatewayConfig.from_env())
        http_tool = HttpToolConnector.from_env()
        if http_tool is not None:
            pipeline.register_tool(http_tool)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        pipeline.start()
        try:
            yield
        finally:
            await pipeline.stop()

    app = FastAPI(
        title="Radar Gateway",
        description="Request admission and tool-execution safety layer",
        version=radar_version,
        lifespan=_lifespan,
    )
    app.state.pipeline = pipeline

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("RADAR_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        # With a token set, require Authorization: Bearer <token> or X-Metrics-Token.
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Messages
    # ---------------------------

    @app.post("/v1/messages/admit")
    async def admit_message(request: AdmitRequest):
        decision = await pipeline.admit_message(request.caller_id, request.text)
        headers = {}
        if decision.code == RADAR_E_RATE_LIMITED:
            headers["Retry-After"] = str(decision.retry_after_seconds)
        return JSONResponse(
            status_code=_STATUS_BY_CODE.get(decision.code, 400),
            content=decision.to_dict(),
            headers=headers,
        )

    @app.post("/v1/messages/sent")
    async def message_sent(request: MessageSentRequest):
        text = await pipeline.record_message_sent(request.caller_id, request.text)
        return {"text": text}

    @app.post("/v1/auth/events")
    async def auth_event(request: AuthEventRequest):
        await pipeline.record_auth(request.caller_id, request.ok, request.username, request.reason)
        return {"recorded": True}

    # ---------------------------
    # Tools
    # ---------------------------

    @app.post("/v1/tools/{tool_name}/invoke")
    async def invoke_tool(tool_name: str, request: ToolInvokeRequest):
        outcome = await pipeline.invoke_tool(request.caller_id, tool_name, request.arguments)
        return JSONResponse(
            status_code=_STATUS_BY_CODE.get(outcome.code, 400),
            content=outcome.to_dict(),
        )

    # ---------------------------
    # Permissions (admin)
    # ---------------------------

    @app.post("/v1/permissions/grant")
    async def grant_permission(request: GrantRequest):
        ok = await pipeline.permissions.grant(request.caller_id, request.tool_name, request.granted_by, request.notes)
        if not ok:
            raise _store_unavailable("grant")
        return {"granted": True, "caller_id": request.caller_id, "tool_name": request.tool_name}

    @app.post("/v1/permissions/revoke")
    async def revoke_permission(request: RevokeRequest):
        ok = await pipeline.permissions.revoke(request.caller_id, request.tool_name, request.revoked_by)
        if not ok:
            raise _store_unavailable("revoke")
        return {"revoked": True, "caller_id": request.caller_id, "tool_name": request.tool_name}

    @app.post("/v1/permissions/bulk-grant")
    async def bulk_grant(request: BulkGrantRequest):
        if not request.tool_names:
            raise gateway_error(RADAR_E_BAD_REQUEST, "tool_names must not be empty")
        granted = await pipeline.permissions.bulk_grant(request.caller_id, request.tool_names, request.granted_by)
        return {"requested": len(request.tool_names), "granted": granted}

    @app.get("/v1/permissions/{caller_id}")
    async def list_permissions(caller_id: int):
        tools = await pipeline.permissions.list_permissions(caller_id)
        return {"caller_id": caller_id, "tools": tools}

    # ---------------------------
    # Audit
    # ---------------------------

    @app.get("/v1/audit/users/{caller_id}")
    async def user_audit_trail(caller_id: int, days_back: int = 7, limit: int = 100):
        events = await pipeline.audit.user_audit_trail(caller_id, days_back=days_back, limit=limit)
        return {"caller_id": caller_id, "events": events}

    @app.get("/v1/audit/incidents")
    async def security_incidents(hours_back: int = 24, min_severity: str = "warning", limit: int = 100):
        try:
            severity = AuditSeverity(min_severity)
        except ValueError:
            raise gateway_error(RADAR_E_BAD_REQUEST, f"unknown severity: {min_severity}")
        events = await pipeline.audit.security_incidents(hours_back=hours_back, min_severity=severity, limit=limit)
        return {"events": events}

    @app.post("/v1/audit/purge")
    async def purge_audit(request: PurgeRequest):
        try:
            deleted = await pipeline.audit.purge_older_than(request.days)
        except Exception as e:
            logger.error("Audit purge failed: %s", e)
            raise _store_unavailable("purge")
        return {"deleted": deleted}

    # ---------------------------
    # Introspection
    # ---------------------------

    @app.get("/v1/stats")
    async def stats():
        return pipeline.stats()

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        lockdown = pipeline.store.circuit.is_lockdown_active()
        return {
            "status": "degraded" if lockdown else "healthy",
            "store_lockdown": lockdown,
            "version": radar_version,
        }

    return app


def main():
    """
    Main entry point for radar-gateway.

    Usage:
        radar-gateway                    # Start on default port 8000
        radar-gateway --port 9000        # Start on custom port
        radar-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Radar Gateway - request admission and tool-execution safety layer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    radar-gateway                         Start gateway on 0.0.0.0:8000
    radar-gateway --port 9000             Start on custom port
    radar-gateway --host 127.0.0.1        Bind to localhost only

Environment Variables:
    RADAR_DB_PATH           Path to SQLite database (default: radar_gateway.db)
    RADAR_RATE_LIMIT_USER   Per-caller rate limit (default: 30/m)
    RADAR_RATE_LIMIT_GLOBAL Global rate limit (default: 100/m)
    RADAR_TOOL_TIMEOUT_MS   Tool deadline in milliseconds (default: 30000)
    RADAR_HTTP_TOOL_URL     Register an HTTP-backed tool connector
    RADAR_METRICS_TOKEN     Require this token on /metrics
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    args = parser.parse_args()

    import uvicorn

    print(f"Starting Radar Gateway on {args.host}:{args.port}")
    print("  Endpoints:")
    print("    POST /v1/messages/admit          - Admit an inbound message")
    print("    POST /v1/tools/{tool}/invoke     - Invoke a tool")
    print("    POST /v1/permissions/grant       - Grant a tool permission")
    print("    GET  /v1/audit/incidents         - Recent security incidents")
    print("    GET  /v1/health                  - Health check")
    print()

    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

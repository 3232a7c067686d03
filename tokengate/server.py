#!/usr/bin/env python3
"""
tokengate - HTTP API

Endpoints:
  POST /api/verify                          - Verify a signed message and admit
  POST /api/verify/report                   - Diagnostic strict/permissive report
  GET  /api/cron/recheck                    - Periodic checks (Bearer CRON_SECRET)
  GET  /api/cron/cleanup                    - Expire join requests (x-cron-secret)
  GET  /api/admin/stats                     - Store counters (Bearer ADMIN_SECRET)
  PUT  /api/admin/chats/{chat_id}/policy    - Replace a chat's policy
  GET  /api/admin/chats/{chat_id}/recheck   - Read-only compliance report
  POST /api/admin/chats/{chat_id}/enforce   - Enforce the live policy
  GET  /api/status                          - Server status

Run:
  python -m tokengate.server
"""

import hmac
import logging
import time
from typing import Optional

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import __version__
from .balances import CounterpartyClient
from .compliance import ComplianceEngine, Reason
from .config import Config
from .errors import GateError, PolicyError
from .policy import policy_from_json
from .rate_limiter import RateLimiter, client_key
from .store import GateStore
from .telegram import TelegramClient
from .verifier import verification_report

log = logging.getLogger(__name__)

# HTTP status per admission reason
REASON_STATUS = {
    Reason.OK: 200,
    Reason.INVALID_REQUEST: 400,
    Reason.INVALID_MESSAGE: 400,
    Reason.SIGNATURE_INVALID: 400,
    Reason.BALANCE_INSUFFICIENT: 403,
    Reason.RATE_LIMIT: 429,
    Reason.UPSTREAM_ERROR: 502,
    Reason.SERVER_ERROR: 500,
}


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: int = Field(alias="chatId")
    user_id: int = Field(alias="userId")
    address: str
    message: str
    signature: str


class ReportRequest(BaseModel):
    address: str
    message: str
    signature: str


# =============================================================================
# WIRING
# =============================================================================

def build_engine(config: Config, chat=None, fetch_balances=None) -> ComplianceEngine:
    """Engine with the Telegram and Counterparty adapters from config."""
    if chat is None:
        chat = TelegramClient(config.telegram_bot_token, config.telegram_api_base,
                              timeout=config.external_call_timeout_s)
    if fetch_balances is None:
        fetch_balances = CounterpartyClient(config.xcp_api_base,
                                            timeout=int(config.external_call_timeout_s))
    return ComplianceEngine(
        GateStore(config.store_path), chat, fetch_balances,
        concurrency=config.enforce_concurrency,
        call_timeout=config.external_call_timeout_s,
        join_request_ttl_hours=config.join_request_ttl_hours,
        join_request_retention_days=config.join_request_retention_days,
        attestation_ttl_days=config.attestation_ttl_days,
        verify_domain=config.verify_domain,
        verify_url=config.app_public_url,
    )


def _secret_ok(provided: Optional[str], expected: str) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided, expected)


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):]
    return None


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Unauthorized"}, status_code=401)


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(engine: ComplianceEngine, config: Config,
               limiter: Optional[RateLimiter] = None) -> FastAPI:
    app = FastAPI(title="tokengate", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    limiter = limiter or RateLimiter(config.rate_limit_max, config.rate_limit_window_s)
    started = time.time()

    def rate_limited(request: Request) -> Optional[JSONResponse]:
        peer = request.client.host if request.client else None
        key = client_key(request.headers, peer)
        allowed, remaining = limiter.check(key)
        if allowed:
            return None
        log.warning(f"Rate limit hit for {key}")
        reset_at = limiter.reset_at(key) or time.time()
        return JSONResponse(
            {"ok": False, "reason": Reason.RATE_LIMIT},
            status_code=429,
            headers={"Retry-After": str(max(int(reset_at - time.time()), 1)),
                     "X-RateLimit-Remaining": str(remaining)},
        )

    @app.post("/api/verify")
    async def verify(body: VerifyRequest, request: Request):
        """Check message, signature and policy, then approve the join request."""
        limited = rate_limited(request)
        if limited is not None:
            return limited
        try:
            result = await engine.admit(body.chat_id, body.user_id, body.address.strip(),
                                        body.message, body.signature.strip())
        except GateError as e:
            log.error(f"verify failed for {body.user_id} in chat {body.chat_id}: {e}")
            return JSONResponse({"ok": False, "reason": Reason.SERVER_ERROR}, status_code=500)
        return JSONResponse(result.to_dict(), status_code=REASON_STATUS.get(result.reason, 500))

    @app.post("/api/verify/report")
    async def verify_report(body: ReportRequest, request: Request):
        limited = rate_limited(request)
        if limited is not None:
            return limited
        return verification_report(body.address.strip(), body.message, body.signature.strip())

    # -------------------------------------------------------------------------
    # cron
    # -------------------------------------------------------------------------

    @app.get("/api/cron/recheck")
    async def cron_recheck(authorization: Optional[str] = Header(None)):
        if not _secret_ok(_bearer(authorization), config.cron_secret):
            return _unauthorized()
        reports = await engine.run_periodic_checks()
        return {"ok": True, "chats": [r.to_dict() for r in reports]}

    @app.get("/api/cron/cleanup")
    async def cron_cleanup(secret: Optional[str] = None,
                           x_cron_secret: Optional[str] = Header(None)):
        if not _secret_ok(x_cron_secret or secret, config.cron_secret):
            return _unauthorized()
        report = await engine.expire_join_requests()
        return {"ok": True, **report.to_dict()}

    # -------------------------------------------------------------------------
    # admin
    # -------------------------------------------------------------------------

    @app.get("/api/admin/stats")
    async def admin_stats(authorization: Optional[str] = Header(None)):
        if not _secret_ok(_bearer(authorization), config.admin_secret):
            return _unauthorized()
        return engine.status()

    @app.put("/api/admin/chats/{chat_id}/policy")
    async def admin_set_policy(chat_id: int, request: Request,
                               authorization: Optional[str] = Header(None)):
        if not _secret_ok(_bearer(authorization), config.admin_secret):
            return _unauthorized()
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"error": "body must be JSON"}, status_code=400)
        try:
            policy = policy_from_json(chat_id, payload)
        except PolicyError as e:
            return JSONResponse({"error": e.message, "code": e.code}, status_code=400)
        new_hash = engine.set_policy(policy)
        return {"ok": True, "policy": policy.to_dict(), "policy_hash": new_hash}

    @app.get("/api/admin/chats/{chat_id}/recheck")
    async def admin_recheck(chat_id: int, authorization: Optional[str] = Header(None)):
        if not _secret_ok(_bearer(authorization), config.admin_secret):
            return _unauthorized()
        report = await engine.recheck(chat_id)
        return report.to_dict()

    @app.post("/api/admin/chats/{chat_id}/enforce")
    async def admin_enforce(chat_id: int, authorization: Optional[str] = Header(None)):
        if not _secret_ok(_bearer(authorization), config.admin_secret):
            return _unauthorized()
        report = await engine.enforce(chat_id)
        return report.to_dict()

    @app.get("/api/status")
    async def status():
        return {
            "status": "ok",
            "version": __version__,
            "uptime_s": int(time.time() - started),
            **engine.status(),
        }

    return app


# =============================================================================
# MAIN
# =============================================================================

def main():
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="tokengate HTTP API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=3000)
    args = parser.parse_args()

    config = Config.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    app = create_app(build_engine(config), config)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()

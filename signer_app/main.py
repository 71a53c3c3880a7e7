import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hive_signer import __version__
from hive_signer.errors import FailureCode, LedgerErrorCategory, ProvisioningResult
from hive_signer.ledger import InMemoryLedgerClient, LedgerClient, LighthiveLedgerClient
from hive_signer.logging_config import audit_log, configure_logging, get_request_id, set_request_id
from hive_signer.provisioning import AccountAuthorities, AccountProvisioner
from hive_signer.recovery import FileRecoveryCache, RecoveryCache
from hive_signer.sessions import InMemorySessionStore, RedisSessionStore, SessionStore, SessionSweeper
from hive_signer.util import utc_iso

from . import config
from .models import CreateClaimedAccountRequest, MarkDeliveredRequest, PrepareAccountRequest
from .rate_limit import RateLimiter
from .security import SIGNER_TOKEN_HEADER, AuthStatus, check_signer_token, extract_client_id

logger = logging.getLogger("signer_app")

app = FastAPI(title="Hive Signup Signer", version=__version__, debug=config.is_debug())

# (HTTP status, error label) per failure code
FAILURE_RESPONSES = {
    FailureCode.INVALID_INPUT: (400, "Validation Error"),
    FailureCode.NAME_TAKEN: (400, "Validation Error"),
    FailureCode.INVALID_SESSION: (400, "Invalid Session"),
    FailureCode.SESSION_MISMATCH: (400, "Session Mismatch"),
    FailureCode.KEY_MISMATCH: (400, "Key Mismatch"),
    FailureCode.SESSION_ALREADY_USED: (400, "Session Already Used"),
    FailureCode.BROADCAST_FAILED: (502, "Blockchain Error"),
    FailureCode.LEDGER_ERROR: (502, "Blockchain Error"),
}

# broadcast failures refine the label by ledger category
BROADCAST_RESPONSES = {
    LedgerErrorCategory.INSUFFICIENT_RESOURCES: (502, "Insufficient Resources"),
    LedgerErrorCategory.NO_CLAIMED_ACCOUNTS: (502, "No Claimed Accounts"),
    LedgerErrorCategory.NAME_TAKEN: (400, "Validation Error"),
    LedgerErrorCategory.LEDGER_ERROR: (502, "Blockchain Error"),
}


@dataclass
class Services:
    provisioner: AccountProvisioner
    sessions: SessionStore
    recovery: RecoveryCache
    sweeper: Optional[SessionSweeper] = None


SERVICES: Optional[Services] = None
global_limiter = RateLimiter(config.GLOBAL_RATE_LIMIT, config.RATE_WINDOW_SECONDS)
account_limiter = RateLimiter(config.ACCOUNT_RATE_LIMIT, config.RATE_WINDOW_SECONDS)


def get_ledger_client() -> LedgerClient:
    if config.LEDGER_BACKEND == "memory":
        logger.warning("Using in-memory ledger; no accounts reach the chain")
        return InMemoryLedgerClient()
    return LighthiveLedgerClient(
        node_url=config.HIVE_NODE_URL,
        creator_active_wif=config.HIVE_CREATOR_ACTIVE_WIF,
        timeout=config.LEDGER_TIMEOUT_SECONDS,
    )


def get_session_store() -> SessionStore:
    if config.REDIS_URL:
        try:
            import redis
        except ImportError as e:
            raise RuntimeError("redis is required when REDIS_URL is set") from e
        return RedisSessionStore(redis.Redis.from_url(config.REDIS_URL),
                                 ttl_seconds=config.SESSION_TTL_SECONDS)
    return InMemorySessionStore(ttl_seconds=config.SESSION_TTL_SECONDS)


def configure(
    ledger: Optional[LedgerClient] = None,
    sessions: Optional[SessionStore] = None,
    recovery: Optional[RecoveryCache] = None,
    start_sweeper: bool = False,
) -> Services:
    """Wire the provisioning services; missing parts come from config."""
    global SERVICES
    if SERVICES is not None and SERVICES.sweeper is not None:
        SERVICES.sweeper.stop()

    sessions = sessions or get_session_store()
    recovery = recovery or FileRecoveryCache(
        config.RECOVERY_DIR,
        retention_hours=config.RECOVERY_RETENTION_HOURS,
        sealing_key=config.recovery_sealing_key(),
    )
    provisioner = AccountProvisioner(
        ledger=ledger or get_ledger_client(),
        sessions=sessions,
        recovery=recovery,
        issuer_name=config.HIVE_CREATOR,
    )
    sweeper = None
    if start_sweeper:
        sweeper = SessionSweeper(
            sessions,
            config.SESSION_SWEEP_SECONDS,
            extra_tasks=[global_limiter.cleanup_expired, account_limiter.cleanup_expired],
        )
        sweeper.start()
    SERVICES = Services(provisioner=provisioner, sessions=sessions, recovery=recovery, sweeper=sweeper)
    return SERVICES


@app.on_event("startup")
def _startup():
    configure_logging(config.LOG_LEVEL, json_format=config.LOG_JSON)
    failed = [name for name, ok in config.validate_config().items() if not ok]
    if failed:
        logger.warning("Configuration checks failed: %s", ", ".join(failed))
    if SERVICES is None:
        configure(start_sweeper=True)
    logger.info("Signer started (env=%s, creator=%s)", config.ENV, config.HIVE_CREATOR)


@app.on_event("shutdown")
def _shutdown():
    if SERVICES is not None and SERVICES.sweeper is not None:
        SERVICES.sweeper.stop()


def services() -> Services:
    if SERVICES is None:
        raise RuntimeError("signer services are not configured")
    return SERVICES


# ============================================================
# Middleware and error handlers
# ============================================================

def _client_id(request: Request) -> str:
    return extract_client_id(request.headers, request.client.host if request.client else None,
                             trusted_hops=config.TRUST_PROXY_HOPS)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id") or None)

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > config.MAX_BODY_BYTES:
        response = JSONResponse(status_code=413, content={
            "error": "Payload Too Large",
            "message": f"Request body exceeds {config.MAX_BODY_BYTES} bytes",
        })
        response.headers["x-request-id"] = request_id
        return response

    if request.url.path != "/healthz":
        client_id = _client_id(request)
        result = global_limiter.check(client_id)
        if not result.allowed:
            audit_log.rate_limit_exceeded(client_id, "global")
            response = JSONResponse(
                status_code=429,
                content={
                    "error": "Too Many Requests",
                    "message": "Global rate limit exceeded. Please try again later.",
                },
                headers=result.headers(),
            )
            response.headers["x-request-id"] = request_id
            return response

    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # input values are never echoed back; they may hold key material
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())[1:]),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    logger.warning("Request validation failed on %s (%d errors)", request.url.path, len(details))
    return JSONResponse(status_code=400, content={
        "error": "Validation Error",
        "message": "Invalid request parameters",
        "details": details,
    })


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    content = {"error": "Internal Server Error", "message": "An unexpected error occurred"}
    if not config.is_production():
        content["details"] = type(exc).__name__
    return JSONResponse(status_code=500, content=content,
                        headers={"x-request-id": get_request_id()})


# ============================================================
# Dependencies
# ============================================================

def require_signer_token(request: Request, x_signer_token: Optional[str] = Header(None)):
    status = check_signer_token(x_signer_token, config.SIGNER_TOKEN)
    if status == AuthStatus.VALID:
        return
    audit_log.security_event("auth_failed", severity="medium",
                             client_id=_client_id(request), path=request.url.path, auth=status)
    message = (f"Missing {SIGNER_TOKEN_HEADER} header" if status == AuthStatus.NOT_PROVIDED
               else f"Invalid {SIGNER_TOKEN_HEADER}")
    raise HTTPException(401, {"error": "Unauthorized", "message": message})


def limit_account_operations(request: Request):
    client_id = _client_id(request)
    result = account_limiter.check(client_id)
    if not result.allowed:
        audit_log.rate_limit_exceeded(client_id, request.url.path)
        raise HTTPException(
            429,
            {
                "error": "Too Many Requests",
                "message": "Account operations rate limit exceeded. Please try again later.",
            },
            headers=result.headers(),
        )


def require_non_production():
    if config.is_production():
        raise HTTPException(404, {"error": "Not Found"})


ACCOUNT_GUARDS = [Depends(require_signer_token), Depends(limit_account_operations)]
ADMIN_GUARDS = ACCOUNT_GUARDS + [Depends(require_non_production)]


def _request_info(request: Request) -> Dict[str, Optional[str]]:
    return {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "request_id": get_request_id(),
    }


def _failure_response(result: ProvisioningResult) -> JSONResponse:
    status, label = FAILURE_RESPONSES[result.failure]
    if result.failure == FailureCode.BROADCAST_FAILED and result.ledger_category is not None:
        status, label = BROADCAST_RESPONSES[result.ledger_category]

    content: Dict[str, Any] = {"error": label, "message": result.message, "code": result.failure.value}
    if result.failure in (FailureCode.INVALID_INPUT, FailureCode.NAME_TAKEN):
        if result.details:
            content["field"] = result.details
    elif result.details:
        content["hive_error"] = result.details
    if result.ledger_category is not None:
        content["ledger_category"] = result.ledger_category.value
    return JSONResponse(status_code=status, content=content)


def _success(result: ProvisioningResult, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code,
                        content={"success": True, **result.data, "message": result.message})


# ============================================================
# Routes
# ============================================================

@app.get("/healthz")
def healthz(request: Request, x_signer_token: Optional[str] = Header(None)):
    payload = {
        "status": "ok",
        "timestamp": utc_iso(time.time()),
        "auth": check_signer_token(x_signer_token, config.SIGNER_TOKEN),
        "version": __version__,
    }
    if "text/html" in request.headers.get("accept", ""):
        html = "\n".join([
            "<!doctype html>",
            "<html>",
            '  <head><meta charset="utf-8"><title>Signup Signer Health</title></head>',
            "  <body>",
            "    <h1>Signup Signer Health</h1>",
            f"    <p>Status: {payload['status']}</p>",
            f"    <p>Auth: {payload['auth']}</p>",
            f"    <p>Timestamp: {payload['timestamp']}</p>",
            "  </body>",
            "</html>",
        ])
        return HTMLResponse(html)
    return payload


@app.post("/claim-account", dependencies=ACCOUNT_GUARDS)
def claim_account():
    result = services().provisioner.claim_account()
    if not result.succeeded():
        return _failure_response(result)
    return _success(result)


@app.post("/prepare-account", dependencies=ACCOUNT_GUARDS)
def prepare_account(req: PrepareAccountRequest, request: Request):
    result = services().provisioner.prepare(
        req.new_account_name,
        issuer_name=req.creator_account,
        request_info=_request_info(request),
    )
    if not result.succeeded():
        return _failure_response(result)
    return _success(result)


@app.post("/create-claimed-account", dependencies=ACCOUNT_GUARDS)
def create_claimed_account(req: CreateClaimedAccountRequest, request: Request):
    authorities = AccountAuthorities(
        owner=req.owner.model_dump(),
        active=req.active.model_dump(),
        posting=req.posting.model_dump(),
        memo_key=req.memo_key,
        json_metadata=req.json_metadata,
    )
    provisioner = services().provisioner
    if req.session_mode():
        result = provisioner.finalize(req.session_id, req.new_account_name, authorities,
                                      proof=req.master_password)
    else:
        result = provisioner.create_direct(
            req.new_account_name,
            authorities,
            private_keys=req.private_keys.model_dump() if req.private_keys else None,
            request_info=_request_info(request),
        )
    if not result.succeeded():
        return _failure_response(result)
    return _success(result, status_code=201)


@app.get("/session-stats", dependencies=ADMIN_GUARDS)
def session_stats():
    store = services().sessions
    cleaned = store.sweep_expired()
    return {
        "success": True,
        "stats": store.stats(),
        "cleaned_expired_sessions": cleaned,
        "timestamp": utc_iso(time.time()),
    }


@app.get("/emergency-recovery/list", dependencies=ADMIN_GUARDS)
def emergency_recovery_list():
    accounts = services().recovery.list()
    logger.info("Listed %d emergency recovery records", len(accounts))
    return {
        "success": True,
        "count": len(accounts),
        "accounts": accounts,
        "warning": "These are emergency backup keys. Clean up delivered keys regularly.",
    }


@app.get("/emergency-recovery/{account_name}", dependencies=ADMIN_GUARDS)
def emergency_recovery_get(account_name: str):
    recovery = services().recovery
    record = recovery.retrieve(account_name)
    if record is None:
        raise HTTPException(404, {
            "error": "Not Found",
            "message": f"No emergency keys found for account: {account_name}",
        })
    audit_log.recovery_retrieved(record.subject_name, record.correlation_id)
    return {
        "success": True,
        **record.summary(time.time(), recovery.retention_hours, include_keys=True),
        "warning": "SENSITIVE: These are private keys. Handle with extreme care.",
    }


@app.post("/emergency-recovery/{account_name}/mark-delivered", dependencies=ADMIN_GUARDS)
def emergency_recovery_mark_delivered(account_name: str, req: MarkDeliveredRequest):
    if not services().recovery.mark_delivered(account_name, req.transaction_id):
        raise HTTPException(404, {
            "error": "Not Found",
            "message": f"No emergency keys found for account: {account_name}",
        })
    return {
        "success": True,
        "message": f"Keys for {account_name} marked as delivered",
        "note": "Remember to manually clean up the key file when no longer needed",
    }

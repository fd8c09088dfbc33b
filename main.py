import asyncio
import traceback
from typing import Any, Dict, List, Optional
from fastapi import FastAPI, Depends, HTTPException, Body, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from auth import CredentialResolver, Identity
from config import Settings
from database import SessionLocal, init_db
from dispatcher import Dispatcher, DryRunDispatcher
from errors import GatewayError
from orchestrator import TriggerOrchestrator
from schemas import (
    APIKeyCreate, APIKeyOut, LoginRequest, PasswordChange, RegisterRequest, SessionOut, UserOut, WebhookOut,
    WebhookRotateOut, WebhookRotateRequest, WebhookStatsOut,
)
from utils import cleanup_expired_sessions, cleanup_old_rate_limits, get_client_ip, get_user_agent
from logging_config import logger

app = FastAPI(title="Webcuts Trigger Gateway")

# Dependency to get DB session
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_dispatcher(request: Request) -> Dispatcher:
    return getattr(request.app.state, "dispatcher", None) or DryRunDispatcher()

def get_orchestrator(db: Session = Depends(get_db), dispatcher: Dispatcher = Depends(get_dispatcher)):
    return TriggerOrchestrator(db, dispatcher)

def require_identity(permission: str = None):
    def dependency(request: Request, db: Session = Depends(get_db)) -> Identity:
        return CredentialResolver(db).require(
            request.headers, request.query_params, permission, get_client_ip(request.headers)
        )
    return dependency

@app.on_event("startup")
async def startup():
    # Explicit, idempotent schema step; nothing checks for it per request
    await asyncio.to_thread(init_db)

    if not hasattr(app.state, "dispatcher"):
        logger.warning("No push transport configured, using dry-run dispatcher")
        app.state.dispatcher = DryRunDispatcher()

    if Settings.ROTATE_LEGACY_WEBHOOKS_ON_STARTUP:
        def rotate_legacy():
            db = SessionLocal()
            try:
                return TriggerOrchestrator(db, app.state.dispatcher).rotate_legacy_webhooks()
            finally:
                db.close()
        await asyncio.to_thread(rotate_legacy)

    # Start background cleanup task
    app.state.cleanup_task = asyncio.create_task(periodic_cleanup())

@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "cleanup_task", None)
    if task:
        task.cancel()

async def periodic_cleanup():
    while True:
        try:
            # Run cleanup in a thread to avoid blocking event loop
            def run_cleanup():
                db = SessionLocal()
                try:
                    cleanup_old_rate_limits(db, Settings.RATE_LIMIT_RETENTION_MINUTES)
                    cleanup_expired_sessions(db)
                finally:
                    db.close()

            await asyncio.to_thread(run_cleanup)
        except Exception as e:
            logger.error(f"Cleanup task failed: {e}")

        await asyncio.sleep(Settings.CLEANUP_INTERVAL_SECONDS)

@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    logger.warning(f"{type(exc).__name__}: {exc.status_code} - {exc.message} at {request.method} {request.url.path}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers)

@app.exception_handler(Exception)
async def internal_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception at {request.method} {request.url.path}")
    logger.error("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.warning(f"HTTPException: {exc.status_code} - {exc.detail} at {request.method} {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
    )

@app.get("/health")
def health_check():
    return {"status": "ok"}

@app.post("/webhook/{webhook_id}")
async def trigger_webhook(
    webhook_id: str,
    request: Request,
    orchestrator: TriggerOrchestrator = Depends(get_orchestrator),
):
    raw_body = await request.body()
    response = await asyncio.to_thread(
        orchestrator.authorize_and_trigger,
        webhook_id,
        raw_body,
        dict(request.headers),
        dict(request.query_params),
    )
    return JSONResponse(status_code=response.status_code, content=response.body, headers=response.headers)

@app.post("/api/auth/register", response_model=UserOut, status_code=201)
def register(data: RegisterRequest, db: Session = Depends(get_db)):
    # Accounts start unverified; login is refused until they are verified
    return CredentialResolver(db).create_user(data.email, data.password, data.username)

@app.post("/api/auth/login", response_model=SessionOut)
def login(credentials: LoginRequest, request: Request, db: Session = Depends(get_db)):
    identity, token = CredentialResolver(db).authenticate_user(
        credentials.email,
        credentials.password,
        get_client_ip(request.headers),
        get_user_agent(request.headers),
    )
    return {"session_token": token, "email": identity.email}

@app.post("/api/auth/logout")
def logout(request: Request, db: Session = Depends(get_db), identity: Identity = Depends(require_identity())):
    token = request.headers.get("authorization", "")[7:].strip()
    if identity.auth_type != "session" or not CredentialResolver(db).logout(token):
        raise HTTPException(status_code=400, detail="No active session to log out")
    return {"message": "Logged out successfully"}

@app.post("/api/auth/change-password")
def change_password(
    data: PasswordChange,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity()),
):
    CredentialResolver(db).change_password(identity.user_id, data.old_password, data.new_password)
    return {"message": "Password changed, all sessions have been logged out"}

@app.post("/api/keys", response_model=APIKeyOut)
def create_api_key(
    data: APIKeyCreate,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity("keys:manage")),
):
    key, raw_key = CredentialResolver(db).create_api_key(
        identity.user_id, data.name, data.permissions, data.expires_at, data.rate_limit_override
    )
    return {
        "id": key.id,
        "api_key": raw_key,
        "key_prefix": key.key_prefix,
        "name": key.name,
        "permissions": key.permissions,
    }

@app.delete("/api/keys/{key_id}")
def revoke_api_key(
    key_id: str,
    db: Session = Depends(get_db),
    identity: Identity = Depends(require_identity("keys:manage")),
):
    if not CredentialResolver(db).revoke_api_key(identity.user_id, key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"message": "API key revoked"}

@app.get("/api/webhooks", response_model=List[WebhookOut])
def list_webhooks(
    orchestrator: TriggerOrchestrator = Depends(get_orchestrator),
    identity: Identity = Depends(require_identity("webhook:read")),
):
    return orchestrator.list_webhooks(identity)

@app.post("/api/webhooks/{webhook_id}/rotate", response_model=WebhookRotateOut)
def rotate_webhook(
    webhook_id: str,
    request: Request,
    data: Optional[WebhookRotateRequest] = None,
    orchestrator: TriggerOrchestrator = Depends(get_orchestrator),
    identity: Identity = Depends(require_identity("webhook:manage")),
):
    reason = data.reason if data else None
    rotation = orchestrator.rotate_webhook(webhook_id, identity, reason, get_client_ip(request.headers))
    return {
        "old_webhook_id": rotation.old_webhook_id,
        "new_webhook_id": rotation.new_webhook_id,
        "webhook_secret": rotation.webhook_secret,
        "rotated_at": rotation.rotated_at,
    }

@app.patch("/api/webhooks/{webhook_id}", response_model=WebhookOut)
def update_webhook(
    webhook_id: str,
    request: Request,
    changes: Dict[str, Any] = Body(...),
    orchestrator: TriggerOrchestrator = Depends(get_orchestrator),
    identity: Identity = Depends(require_identity("webhook:manage")),
):
    return orchestrator.update_webhook(webhook_id, identity, changes, get_client_ip(request.headers))

@app.get("/api/webhooks/{webhook_id}/stats", response_model=WebhookStatsOut)
def webhook_stats(
    webhook_id: str,
    days: int = 30,
    orchestrator: TriggerOrchestrator = Depends(get_orchestrator),
    identity: Identity = Depends(require_identity("webhook:read")),
):
    return orchestrator.get_webhook_stats(webhook_id, identity, days)

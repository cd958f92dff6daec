# Server - Sync Protocol API
#
# Reference HTTP server for the vault sync protocol. JSON bodies:
#
#   POST /vault/create  {username, authTag, blob, salt?}
#       200 {counter: 1} | 400 username exists
#   POST /vault/sync    {username, authTag, counter, blob?}
#       200 {counter} | 400 {conflict: true, latestBlob, counter} | 404
#   POST /vault/salt    {username}
#       200 {salt}  (decoy salt for unknown usernames)
#   GET  /health
#
# The server stores only base64 blobs; it never decrypts anything.

import base64
import hashlib
import hmac
import logging
import secrets
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..config import ServerSettings
from ..core import EventSeverity, EventType, get_audit_logger, tag_prefix
from ..exceptions import AlreadyExists, AuthOrNotFound, ConflictError
from .store import ServerStore, SqliteServerStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vault", tags=["vault"])

DECOY_SALT_LENGTH = 16


# ── Pydantic Models ──────────────────────────────────────────────────


class CreateVaultRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1, max_length=256)
    auth_tag: str = Field(..., alias="authTag", min_length=1, max_length=128)
    blob: str = Field(..., min_length=1)
    salt: Optional[str] = None


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1, max_length=256)
    auth_tag: str = Field(..., alias="authTag", min_length=1, max_length=128)
    counter: int
    blob: Optional[str] = None


class SaltRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=256)


# ── Dependencies ─────────────────────────────────────────────────────


def get_store(request: Request) -> ServerStore:
    return request.app.state.store


def _decoy_salt(secret: bytes, username: str) -> str:
    """Stable per-username salt for identities that do not exist."""
    digest = hmac.new(secret, username.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest[:DECOY_SALT_LENGTH]).decode("ascii")


# ── Routes ───────────────────────────────────────────────────────────


@router.post("/create")
def create_vault(body: CreateVaultRequest, store: ServerStore = Depends(get_store)):
    """Register a new identity with its first encrypted vault."""
    try:
        counter = store.create(body.username, body.auth_tag, body.blob, salt=body.salt)
    except AlreadyExists:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Vault already exists",
        )

    get_audit_logger().log_sync_event(
        EventType.SERVER_VAULT_CREATED,
        body.username,
        "Vault created",
        details={"auth_tag": tag_prefix(body.auth_tag)},
    )
    return {"counter": counter}


@router.post("/sync")
def sync_vault(body: SyncRequest, store: ServerStore = Depends(get_store)):
    """Compare-and-swap write, or a freshness check when no blob is sent."""
    try:
        counter = store.sync(body.username, body.auth_tag, body.counter, body.blob)
    except AuthOrNotFound:
        get_audit_logger().log_sync_event(
            EventType.SERVER_AUTH_FAILED,
            body.username,
            "Unknown identity",
            severity=EventSeverity.ALERT,
        )
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Vault not found")
    except ConflictError as conflict:
        logger.info(
            "Stale counter from %s: sent %d, server at %d",
            body.username, body.counter, conflict.counter,
        )
        if body.blob is not None:
            get_audit_logger().log_sync_event(
                EventType.SERVER_CONFLICT,
                body.username,
                "Rejected stale write",
                severity=EventSeverity.INVESTIGATE,
                details={"sent": body.counter, "current": conflict.counter},
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "conflict": True,
                "latestBlob": conflict.blob,
                "counter": conflict.counter,
            },
        )

    if body.blob is not None:
        get_audit_logger().log_sync_event(
            EventType.SERVER_VAULT_UPDATED,
            body.username,
            "Vault updated",
            details={"counter": counter},
        )
    return {"counter": counter}


@router.post("/salt")
def get_salt(body: SaltRequest, request: Request, store: ServerStore = Depends(get_store)):
    """Return the identity's registered salt, or a decoy so existence is not revealed."""
    salt = store.get_salt(body.username)
    if not salt:
        salt = _decoy_salt(request.app.state.decoy_secret, body.username)
    return {"salt": salt}


# ── App ──────────────────────────────────────────────────────────────


def create_app(
    store: Optional[ServerStore] = None,
    settings: Optional[ServerSettings] = None,
) -> FastAPI:
    """Build the sync server around a ServerStore."""
    settings = settings or ServerSettings()
    app = FastAPI(
        title="vaultsync",
        description="Encrypted vault sync. The server never sees plaintext.",
        version="1.0.0",
    )
    app.state.store = store or SqliteServerStore(settings.db_path)
    app.state.decoy_secret = (
        settings.decoy_salt_secret.encode("utf-8")
        if settings.decoy_salt_secret
        else secrets.token_bytes(32)
    )
    app.include_router(router)

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    return app


def start_server(settings: Optional[ServerSettings] = None):
    """
    Start the sync server.

    Args:
        settings: Host, port and database location (default: from env)
    """
    settings = settings or ServerSettings.from_env()
    app = create_app(settings=settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")

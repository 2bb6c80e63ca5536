import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
from auth import AppwriteIdentityProvider, IdentityProvider, UserIdentity, bearer_token
from chat import ChatSession
from connections import ConnectionManager
from database import DocumentStore, db
from discovery import DiscoveryEngine
from errors import AppError, AuthError, ValidationError
from notifications import AppwritePushClient, NotificationChannel

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Matchmaking API", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter(prefix="/api/v1")

# -------------------- Errors --------------------

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})

# -------------------- Dependencies --------------------

def get_store() -> DocumentStore:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return DocumentStore(db)


def get_identity_provider() -> IdentityProvider:
    return AppwriteIdentityProvider.from_env()


def require_auth(
    authorization: Optional[str] = Header(default=None),
    provider: IdentityProvider = Depends(get_identity_provider),
) -> UserIdentity:
    token = bearer_token(authorization)
    if not token:
        raise AuthError("Missing token")
    return provider.authenticate(token)


def get_notifier(background_tasks: BackgroundTasks, store: DocumentStore = Depends(get_store)) -> NotificationChannel:
    # Push stays off until the deployment provides an API key.
    push = AppwritePushClient.from_env() if config.APPWRITE_API_KEY else None
    return NotificationChannel(push=push, store=store, schedule=background_tasks.add_task)


def get_discovery(store: DocumentStore = Depends(get_store)) -> DiscoveryEngine:
    return DiscoveryEngine(store)


def get_connections(
    store: DocumentStore = Depends(get_store),
    notifier: NotificationChannel = Depends(get_notifier),
) -> ConnectionManager:
    return ConnectionManager(store, notifier)


def get_chats(
    store: DocumentStore = Depends(get_store),
    notifier: NotificationChannel = Depends(get_notifier),
) -> ChatSession:
    return ChatSession(store, notifier)

# -------------------- Request bodies --------------------

class InvitationRequest(BaseModel):
    receiverUserId: Optional[str] = None


class ConnectionRequest(BaseModel):
    connectionId: Optional[str] = None


class MessageRequest(BaseModel):
    content: Optional[str] = None
    messageType: Optional[str] = None


class DateDetails(BaseModel):
    date: Optional[str] = None
    place: Optional[str] = None


class DateResponseRequest(BaseModel):
    responseType: Optional[str] = None
    newDetails: Optional[DateDetails] = None


def _connection_id(payload: ConnectionRequest) -> str:
    if not payload.connectionId:
        raise ValidationError("connectionId is required")
    return payload.connectionId

# -------------------- Identity --------------------

@api.get("")
def who_am_i(user: UserIdentity = Depends(require_auth)):
    return {"userId": user.id, "user": user.model_dump()}

# -------------------- Discovery --------------------

@api.get("/explore/next-batch")
def explore_next_batch(
    page: int = Query(default=0, ge=0),
    user: UserIdentity = Depends(require_auth),
    discovery: DiscoveryEngine = Depends(get_discovery),
):
    return {"profiles": discovery.next_batch(user.id, page)}


@api.get("/profiles/random-simple")
def random_profiles(
    limit: int = Query(default=config.PAGE_SIZE, gt=0),
    user: UserIdentity = Depends(require_auth),
    discovery: DiscoveryEngine = Depends(get_discovery),
):
    return {"profiles": discovery.random_batch(user.id, limit)}

# -------------------- Invitations --------------------

@api.post("/notification/invitations/send")
def send_invitation(
    payload: InvitationRequest,
    user: UserIdentity = Depends(require_auth),
    connections: ConnectionManager = Depends(get_connections),
):
    if not payload.receiverUserId:
        raise ValidationError("receiverUserId is required")
    result = connections.send_invitation(user.id, payload.receiverUserId)
    return {"message": "Invitation sent", **result}


@api.get("/notification/invitations/active")
def active_sent_invitations(
    user: UserIdentity = Depends(require_auth),
    connections: ConnectionManager = Depends(get_connections),
):
    return {"invitations": connections.active_sent_invitations(user.id)}


@api.post("/notification/invitations/remove-sent")
def remove_sent_invitation(
    payload: ConnectionRequest,
    user: UserIdentity = Depends(require_auth),
    connections: ConnectionManager = Depends(get_connections),
):
    result = connections.remove_sent_invitation(user.id, _connection_id(payload))
    return {"message": "Invitation removed", **result}


@api.get("/notification/invitations/received/active")
def active_received_invitations(
    user: UserIdentity = Depends(require_auth),
    connections: ConnectionManager = Depends(get_connections),
):
    return {"invitations": connections.active_received_invitations(user.id)}


@api.post("/notification/invitations/decline")
def decline_invitation(
    payload: ConnectionRequest,
    user: UserIdentity = Depends(require_auth),
    connections: ConnectionManager = Depends(get_connections),
):
    result = connections.decline_invitation(user.id, _connection_id(payload))
    return {"message": "Invitation declined", **result}


@api.post("/notification/invitations/accept")
def accept_invitation(
    payload: ConnectionRequest,
    user: UserIdentity = Depends(require_auth),
    connections: ConnectionManager = Depends(get_connections),
):
    result = connections.accept_invitation(user.id, _connection_id(payload))
    return {"message": "Invitation accepted", **result}

# -------------------- Chats --------------------

@api.get("/chats/active")
def active_chats(user: UserIdentity = Depends(require_auth), chats: ChatSession = Depends(get_chats)):
    return {"chats": chats.active_chats(user.id)}


@api.post("/chats/remove")
def remove_chat(
    payload: ConnectionRequest,
    user: UserIdentity = Depends(require_auth),
    connections: ConnectionManager = Depends(get_connections),
):
    result = connections.remove_chat(user.id, _connection_id(payload))
    return {"message": "Chat removed successfully.", **result}


@api.get("/chats/{connectionId}/chat-state")
def chat_state(connectionId: str, user: UserIdentity = Depends(require_auth), chats: ChatSession = Depends(get_chats)):
    return chats.chat_state(user.id, connectionId)


@api.post("/chats/{connectionId}/messages")
def send_message(
    connectionId: str,
    payload: MessageRequest,
    user: UserIdentity = Depends(require_auth),
    chats: ChatSession = Depends(get_chats),
):
    message = chats.send_message(user.id, connectionId, payload.content, payload.messageType)
    return {"message": "Message sent successfully", "messageData": message}


@api.get("/chats/{connectionId}/messages")
def get_messages(connectionId: str, user: UserIdentity = Depends(require_auth), chats: ChatSession = Depends(get_chats)):
    return {"messages": chats.chat_messages(connectionId)}


@api.post("/chats/{connectionId}/propose-date")
def propose_date(
    connectionId: str,
    payload: DateDetails,
    user: UserIdentity = Depends(require_auth),
    chats: ChatSession = Depends(get_chats),
):
    connection = chats.propose_date(user.id, connectionId, payload.date, payload.place)
    return {"message": "Date proposal sent successfully.", "connection": connection}


@api.post("/chats/{connectionId}/respond-date")
def respond_date(
    connectionId: str,
    payload: DateResponseRequest,
    user: UserIdentity = Depends(require_auth),
    chats: ChatSession = Depends(get_chats),
):
    details = payload.newDetails.model_dump() if payload.newDetails else None
    connection = chats.respond_to_date_proposal(user.id, connectionId, payload.responseType, details)
    outcome = {"accept": "accepted", "reject": "rejected", "modify": "modified"}[payload.responseType]
    return {"message": f"Date proposal {outcome} successfully.", "connection": connection}


app.include_router(api)

# -------------------- Diagnostics --------------------

@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/")
def read_root():
    return {"message": "Matchmaking Backend Running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
            response["database_name"] = "✅ Set" if config.DATABASE_NAME else "❌ Not Set"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:20]
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))

import logging
import uuid

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from chat_service.api.schemas import ConversationResponse, HistoryItem
from chat_service.core.cache import get_store
from chat_service.core.errors import IdentityStoreFailure
from chat_service.core.generation import HttpGenerationClient
from chat_service.core.history import ConversationHistoryStore
from chat_service.core.identity import ConversationIdentityResolver
from chat_service.core.lifecycle import SessionLifecycleManager
from chat_service.core.metrics import metrics
from chat_service.core.protocol import ClientChannel, error_frame, parse_inbound
from chat_service.core.search import HttpSearchClient
from chat_service.core.settings import SETTINGS

router = APIRouter()
logger = logging.getLogger(__name__)


def build_manager() -> SessionLifecycleManager:
    store = get_store()
    return SessionLifecycleManager(
        identity=ConversationIdentityResolver(store),
        history=ConversationHistoryStore(store),
        search=HttpSearchClient(),
        generation=HttpGenerationClient(),
    )


MANAGER = build_manager()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    snapshot = metrics.snapshot()
    snapshot["chat_active_sessions"] = MANAGER.active_count()
    return snapshot


@router.get("/chat/conversation")
def chat_conversation(request: Request):
    if not SETTINGS.expose_history_endpoint:
        return JSONResponse(status_code=404, content={"error": {"code": "not_found", "message": "Not found."}})
    user_id = (request.headers.get("x-user-id") or "").strip()
    if not user_id:
        return JSONResponse(
            status_code=400,
            content={"error": {"code": "invalid_request", "message": "x-user-id header is required."}},
        )
    try:
        conversation_id = MANAGER.identity.current(user_id)
    except IdentityStoreFailure as exc:
        logger.error("conversation lookup failed user_id=%s: %s", user_id, exc)
        return JSONResponse(
            status_code=503,
            content={"error": {"code": exc.code, "message": exc.user_message}},
        )
    history = MANAGER.history.read(conversation_id) if conversation_id else []
    response = ConversationResponse(
        user_id=user_id,
        conversation_id=conversation_id,
        history=[HistoryItem(**entry.to_dict()) for entry in history],
    )
    return response.model_dump()


def _socket_user_id(websocket: WebSocket) -> str:
    user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id") or ""
    return user_id.strip()


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket):
    user_id = _socket_user_id(websocket)
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    connection_id = uuid.uuid4().hex
    manager = MANAGER
    channel = ClientChannel(websocket.send_json).start()
    logger.info("socket connected connection_id=%s user_id=%s", connection_id, user_id)
    metrics.inc("chat_socket_connected_total")
    try:
        while True:
            raw = await websocket.receive_text()
            message = parse_inbound(raw)
            if not message:
                channel.post(error_frame("invalid_message", "Message must not be empty."))
                continue
            await manager.handle_message(connection_id, user_id, message, channel)
    except WebSocketDisconnect as exc:
        logger.info("socket disconnected connection_id=%s code=%s", connection_id, exc.code)
    finally:
        manager.cancel(connection_id)
        await channel.close(drain=False)

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, Query, WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from app.auth import assert_actor_authorized, resolve_socket_user
from app.models import ChatGroup, MarkSeenRequest, Message, MessageSendRequest, PresenceState, SeenResult
from app.routers.requests import raise_marketplace_http_error
from app.services.dispatcher import Subscription
from app.services.errors import DeliveryError, MarketplaceError, ValidationError
from app.services.marketplace import marketplace
from app.session import Session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


@router.get("/threads", response_model=list[ChatGroup])
def chat_list(
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return marketplace.chat_list(marketplace.session_for(user_id))
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.get("/presence/{user_id}", response_model=PresenceState)
def presence(user_id: str):
    return marketplace.dispatcher.presence.snapshot(user_id)


@router.get("/{appointment_id}/messages", response_model=list[Message])
def list_messages(
    appointment_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return marketplace.list_messages(marketplace.session_for(user_id), appointment_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/{appointment_id}/messages", response_model=Message)
def send_message(
    appointment_id: str,
    payload: MessageSendRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace.send_message(
            marketplace.session_for(payload.actor_user_id),
            appointment_id,
            payload.body,
            client_message_id=payload.client_message_id,
        )
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


@router.post("/{appointment_id}/seen", response_model=SeenResult)
def mark_seen(
    appointment_id: str,
    payload: MarkSeenRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return marketplace.mark_seen(marketplace.session_for(payload.actor_user_id), appointment_id)
    except MarketplaceError as exc:
        raise_marketplace_http_error(exc)


class _SocketSession:
    """One websocket connection: a user channel plus any joined threads.

    Store-bound work runs on the threadpool; only subscription bookkeeping and
    typing timers stay on the event loop.
    """

    def __init__(self, websocket: WebSocket, session: Session):
        self.websocket = websocket
        self.session = session
        self.send_lock = asyncio.Lock()
        self.subscriptions: Dict[str, Subscription] = {}
        self.tasks: Dict[str, asyncio.Task] = {}

    async def send(self, payload: Dict[str, Any]) -> None:
        async with self.send_lock:
            await self.websocket.send_json(payload)

    async def _pump(self, subscription: Subscription) -> None:
        try:
            async for event in subscription:
                await self.send(event.model_dump())
        except DeliveryError as exc:
            await self.send({"type": "error", "code": "resync", "channel": subscription.channel, "detail": str(exc)})

    def watch(self, key: str, subscription: Subscription) -> None:
        self.unwatch(key)
        self.subscriptions[key] = subscription
        self.tasks[key] = asyncio.create_task(self._pump(subscription))

    def unwatch(self, key: str) -> None:
        subscription = self.subscriptions.pop(key, None)
        if subscription is not None:
            subscription.cancel()
        task = self.tasks.pop(key, None)
        if task is not None:
            task.cancel()

    async def join(self, appointment_id: str) -> None:
        self.leave(appointment_id)
        backlog, subscription = await run_in_threadpool(
            marketplace.join_thread, self.session, appointment_id, asyncio.get_running_loop()
        )
        # Backlog goes out before the pump starts so history precedes live events.
        await self.send(
            {
                "type": "backlog",
                "appointment_id": appointment_id,
                "messages": [message.model_dump() for message in backlog],
            }
        )
        self.watch(f"thread:{appointment_id}", subscription)

    def leave(self, appointment_id: str) -> None:
        self.unwatch(f"thread:{appointment_id}")
        marketplace.stop_typing(self.session, appointment_id)

    async def handle(self, data: Dict[str, Any]) -> None:
        action = str(data.get("action") or "")
        appointment_id = str(data.get("appointment_id") or "")
        if action != "ping" and not appointment_id:
            raise ValidationError("appointment_id is required")
        if action == "join":
            await self.join(appointment_id)
        elif action == "leave":
            self.leave(appointment_id)
        elif action == "typing":
            await run_in_threadpool(marketplace.assert_participant, self.session, appointment_id)
            marketplace.dispatcher.typing(self.session.user_id, appointment_id)
        elif action == "stop_typing":
            marketplace.stop_typing(self.session, appointment_id)
        elif action == "send":
            marketplace.stop_typing(self.session, appointment_id)
            message = await run_in_threadpool(
                marketplace.send_message,
                self.session,
                appointment_id,
                str(data.get("body") or ""),
                client_message_id=data.get("client_message_id"),
            )
            await self.send({"type": "ack", "appointment_id": appointment_id, "message": message.model_dump()})
        elif action == "seen":
            result = await run_in_threadpool(marketplace.mark_seen, self.session, appointment_id)
            await self.send({"type": "seen", **result.model_dump()})
        elif action == "ping":
            await self.send({"type": "pong"})
        else:
            raise ValidationError(f"Unknown action: {action or '<empty>'}")

    async def close(self) -> None:
        tasks = list(self.tasks.values())
        for key in list(self.subscriptions):
            self.unwatch(key)
        await asyncio.gather(*tasks, return_exceptions=True)


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None),
):
    resolved = resolve_socket_user(token, user_id)
    if not resolved:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    session = await run_in_threadpool(marketplace.session_for, resolved)
    socket = _SocketSession(websocket, session)
    socket.watch("user", marketplace.subscribe_user(session))
    await run_in_threadpool(marketplace.connect, session)
    try:
        while True:
            data = await websocket.receive_json()
            if not isinstance(data, dict):
                await socket.send({"type": "error", "detail": "Expected a JSON object"})
                continue
            try:
                await socket.handle(data)
            except MarketplaceError as exc:
                await socket.send({"type": "error", "action": data.get("action"), "detail": str(exc)})
    except WebSocketDisconnect:
        logger.debug("Socket closed for %s", session.user_id)
    finally:
        marketplace.clear_typing(session)
        await socket.close()
        await run_in_threadpool(marketplace.disconnect, session)

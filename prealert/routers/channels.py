import asyncio
import logging
from typing import Awaitable, Callable

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from prealert.errors import Forbidden, InvalidArgument, Unauthorized
from prealert.services import access
from prealert.services.subscriptions import Subscription

logger = logging.getLogger(__name__)

router = APIRouter(tags=["channels"])

PING_INTERVAL_SECONDS = 10.0

# Application close codes
CLOSE_UNAUTHORIZED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_DUPLICATE = 4409


async def _until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def _relay(
    websocket: WebSocket,
    subscription: Subscription,
    next_message: Callable[[], Awaitable[dict | None]],
    close_code: Callable[[], int] = lambda: CLOSE_UNAUTHORIZED,
) -> None:
    """Forward messages until the client leaves or the subscription closes.

    A subscription closed from the server side closes the socket with
    ``close_code()``.
    """
    reader = asyncio.create_task(_until_disconnect(websocket))
    try:
        while not reader.done() and not subscription.closed:
            getter = asyncio.ensure_future(next_message())
            done, _ = await asyncio.wait(
                {reader, getter},
                timeout=PING_INTERVAL_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if getter not in done:
                getter.cancel()
                if reader.done() or subscription.closed:
                    break
                await websocket.send_json({"type": "ping"})
                continue
            message = getter.result()
            if message is not None:
                await websocket.send_json(message)
        if not reader.done():
            await websocket.close(code=close_code())
    except WebSocketDisconnect:
        pass
    finally:
        reader.cancel()
        subscription.close()


@router.websocket("/ws/alerts")
async def alerts_channel(websocket: WebSocket, token: str = Query("")):
    """Live alert changes for the signed-in hospital or ambulance.

    Hospitals get alerts addressed to them, ambulances their own alerts,
    admins everything. Sends ``{"type": "ping"}`` when idle.
    """
    services = websocket.app.state.services
    try:
        session = services.sessions.get(token)
    except Unauthorized:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    if session.role == "hospital":
        filters = {"hospital_id": session.linked_entity}
    elif session.role == "ambulance":
        filters = {"ambulance_id": session.linked_entity}
    else:
        filters = {}

    await websocket.accept()
    try:
        subscription = services.sessions.open_subscription(session, "alerts", filters)
    except InvalidArgument as exc:
        await websocket.send_json({"type": "error", "detail": exc.message})
        await websocket.close(code=CLOSE_DUPLICATE)
        return
    logger.info("Alert channel opened for %s", session.username)

    async def next_alert() -> dict | None:
        event = await subscription.get()
        if event is None:
            return None
        return {"type": "alert", "event": event["type"], "alert": event["record"]}

    await _relay(websocket, subscription, next_alert)
    logger.info("Alert channel closed for %s", session.username)


@router.websocket("/ws/vitals/{ambulance_id}")
async def vitals_channel(websocket: WebSocket, ambulance_id: str, token: str = Query("")):
    """Current SpO2 / heart rate for one ambulance, then every new reading."""
    services = websocket.app.state.services
    try:
        session = services.sessions.get(token)
        await access.require_vitals_view(session, services.store, ambulance_id)
    except Unauthorized:
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return
    except Forbidden:
        await websocket.close(code=CLOSE_FORBIDDEN)
        return

    await websocket.accept()
    updates: asyncio.Queue = asyncio.Queue()

    def on_update(spo2: int, heart_rate: int) -> None:
        updates.put_nowait({
            "type": "vitals",
            "ambulance_id": ambulance_id,
            "spo2": spo2,
            "heart_rate": heart_rate,
        })

    try:
        subscription = await services.vitals.subscribe(ambulance_id, on_update, registry=session.subscriptions)
    except InvalidArgument as exc:
        await websocket.send_json({"type": "error", "detail": exc.message})
        await websocket.close(code=CLOSE_DUPLICATE)
        return
    subscription.on_close(lambda _: updates.put_nowait(None))

    # Hospital access lasts only while the alert stays open and addressed to it
    revoked = False
    watch = None
    if session.role == "hospital":
        watch = Subscription(services.feed, "alerts", {"ambulance_id": ambulance_id})

        async def recheck(_event: dict) -> None:
            nonlocal revoked
            try:
                await access.require_vitals_view(session, services.store, ambulance_id)
            except Forbidden:
                logger.info("Vitals for %s no longer visible to %s", ambulance_id, session.username)
                revoked = True
                subscription.close()

        watch.start(recheck)

    try:
        await _relay(
            websocket,
            subscription,
            updates.get,
            close_code=lambda: CLOSE_FORBIDDEN if revoked else CLOSE_UNAUTHORIZED,
        )
    finally:
        if watch is not None:
            watch.close()

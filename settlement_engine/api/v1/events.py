"""WS /v1/groups/{group_id}/events - realtime cues for a group session"""

import asyncio
import logging
from typing import Optional
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from settlement_engine.infrastructure.realtime.events import Event
from settlement_engine.infrastructure.realtime.notifier import Subscription

router = APIRouter()


async def _next_event(subscription: Subscription) -> Optional[Event]:
    """Next event, or None once the subscription is closed"""
    try:
        return await subscription.get()
    except StopAsyncIteration:
        return None


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Inbound messages carry nothing; reading them is how a hang-up is noticed
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/groups/{group_id}/events")
async def group_events(websocket: WebSocket, group_id: str, member_id: str = Query(..., min_length=1)):
    """
    Stream BalanceChanged / SettlementStatusChanged events for one group.

    The subscription lives exactly as long as the socket: the handler listens
    for the client's disconnect while waiting for events, so a quiet group does
    not keep a departed subscriber registered.
    """
    notifier = websocket.app.state.notifier
    await websocket.accept()
    async with notifier.subscribe(group_id, member_id) as subscription:
        disconnected = asyncio.create_task(_wait_for_disconnect(websocket))
        try:
            while True:
                next_event = asyncio.create_task(_next_event(subscription))
                await asyncio.wait({disconnected, next_event}, return_when=asyncio.FIRST_COMPLETED)
                if disconnected.done():
                    next_event.cancel()
                    break
                event = next_event.result()
                if event is None:
                    break
                await websocket.send_json(event.to_payload())
        except WebSocketDisconnect:
            pass
        finally:
            disconnected.cancel()
    logging.info("Event subscriber disconnected", extra={"group_id": group_id, "member_id": member_id})

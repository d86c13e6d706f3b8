"""
WebSocket API for Real-Time Prices
PaperTrade Platform

Protocol:
1. Client connects
2. Server sends: {"type": "connected", "client_id": "xxx"}
3. Client can send commands:
   - Subscribe: {"action": "subscribe", "symbols": ["RELIANCE", "TCS"]}
   - Unsubscribe: {"action": "unsubscribe", "symbols": ["TCS"]}
   - Ping: {"action": "ping"}
4. Server streams data:
   - Price: {"type": "price_update", "data": {...}}
   - All prices: {"type": "prices", "data": [...], "timestamp": "..."}
"""

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from papertrade.api.deps import get_ws_container
from papertrade.schemas.signal import ClientMessage


router = APIRouter()


@router.websocket("/ws/prices")
async def websocket_prices(websocket: WebSocket):
    await websocket.accept()

    hub = get_ws_container(websocket).hub
    client_id = None

    try:
        client_id = await hub.register_client(websocket)

        while True:
            data = await websocket.receive_text()
            try:
                message = ClientMessage.model_validate(json.loads(data))
            except json.JSONDecodeError:
                hub.send_to_client(client_id, {"type": "error", "message": "Invalid JSON"})
                continue
            except PydanticValidationError as e:
                hub.send_to_client(client_id, {"type": "error", "message": e.errors()[0]["msg"]})
                continue

            await hub.handle_client_message(client_id, message.model_dump())

    except WebSocketDisconnect:
        logger.info(f"WebSocket client {client_id} disconnected")
    except Exception as e:
        logger.error(f"WebSocket error for client {client_id}: {e}")
    finally:
        if client_id:
            await hub.unregister_client(client_id)

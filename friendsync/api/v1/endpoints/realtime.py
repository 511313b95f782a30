import json
import logging
from fastapi import WebSocket, WebSocketDisconnect, Query, status
from redis.exceptions import RedisError

from friendsync.core.websocket import connection_manager

logger = logging.getLogger(__name__)


async def websocket_endpoint(
    websocket: WebSocket,
    user_id: str = Query("", description="Id of the authenticated user")
):
    """Push a "changed" frame whenever one of the user's friendships changes"""
    user_id = user_id.strip()
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        await connection_manager.connect(websocket, user_id)
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring non-JSON frame from user {user_id}")
                continue

            if isinstance(message, dict) and message.get("type") == "ping":
                await connection_manager.send_pong(websocket)

    except WebSocketDisconnect:
        pass
    except (RedisError, RuntimeError) as e:
        logger.error(f"Change feed unavailable for user {user_id}: {e}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    finally:
        await connection_manager.disconnect(websocket, user_id)

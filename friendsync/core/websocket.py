import json
import asyncio
from typing import Dict, Optional, Set
from fastapi import WebSocket
from datetime import datetime, timezone
import logging

from friendsync.core.changefeed import ChangeFeed, ChangeSubscription, change_feed
from friendsync.schemas.friendship import FriendshipChange

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Forwards friendship changes to connected websocket clients.

    A user may hold several sockets (one per device or tab); they share a
    single change-feed subscription that lives as long as any of them.
    """

    def __init__(self, change_feed: ChangeFeed):
        self.change_feed = change_feed

        # Active connections: user_id -> Set[WebSocket]
        self.active_connections: Dict[str, Set[WebSocket]] = {}

        # Change-feed subscriptions: user_id -> subscription
        self.subscriptions: Dict[str, ChangeSubscription] = {}

        # Guards subscriptions across the awaits in connect/disconnect
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: str):
        """Accept new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            if user_id not in self.subscriptions:
                async def forward(change: Optional[FriendshipChange]):
                    await self.notify_user(user_id, change)

                self.subscriptions[user_id] = await self.change_feed.subscribe(user_id, forward)

            self.active_connections.setdefault(user_id, set()).add(websocket)

        logger.info(f"User {user_id} connected ({len(self.active_connections[user_id])} sockets)")

    async def disconnect(self, websocket: WebSocket, user_id: str):
        """Handle WebSocket disconnection"""
        async with self._lock:
            sockets = self.active_connections.get(user_id)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self.active_connections[user_id]

            if user_id not in self.active_connections:
                subscription = self.subscriptions.pop(user_id, None)
                if subscription is not None:
                    await subscription.close()

        logger.info(f"User {user_id} disconnected from WebSocket")

    async def send_personal_message(self, websocket: WebSocket, message: dict) -> bool:
        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except Exception as e:
            logger.error(f"Error sending message: {e}")
            return False

    async def notify_user(self, user_id: str, change: Optional[FriendshipChange]):
        """Tell every socket of the user that their friendships changed"""
        sockets = list(self.active_connections.get(user_id, ()))
        if not sockets:
            return

        message = {
            "type": "changed",
            "data": change.model_dump(mode="json") if change else None,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
        results = await asyncio.gather(
            *(self.send_personal_message(ws, message) for ws in sockets)
        )
        logger.debug(f"Notified {sum(results)}/{len(sockets)} sockets of user {user_id}")

    async def send_pong(self, websocket: WebSocket):
        """Send pong response to ping"""
        await self.send_personal_message(websocket, {
            "type": "pong",
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    async def close_all(self):
        async with self._lock:
            for subscription in self.subscriptions.values():
                await subscription.close()
            self.subscriptions.clear()
            self.active_connections.clear()


# Global connection manager instance
connection_manager = ConnectionManager(change_feed)

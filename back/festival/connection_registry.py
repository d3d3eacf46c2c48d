"""
Connection Registry

Tracks live real-time connections, the role each one declared, and the rooms
it belongs to. State is per-process; cross-process fan-out goes through the
Redis relay (see redis_relay.py).
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable
from uuid import uuid4

from .errors import NotFound, ValidationError

logger = logging.getLogger(__name__)

MAX_ROOM_NAME_LENGTH = 64


class ClientRole(str, Enum):
    customer = "customer"
    kitchen = "kitchen"
    cashier = "cashier"
    pickup = "pickup"
    admin = "admin"
    monitoring = "monitoring"


def default_room_for(role: ClientRole) -> str:
    """Every role has a room of the same name."""
    return role.value


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ConnectedClient:
    """
    A live connection. `connection` is anything with a `deliver(message: dict)`
    method (the WebSocket wrapper in production, a recorder in tests).
    """
    connection_id: str
    connection: Any
    role: ClientRole | None = None
    joined_at: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)
    rooms: set[str] = field(default_factory=set)

    def deliver(self, message: dict) -> None:
        self.connection.deliver(message)


class ConnectionRegistry:
    def __init__(self):
        self._clients: dict[str, ConnectedClient] = {}
        self._rooms: dict[str, set[str]] = {}
        # Publications arrive from worker threads while the socket loop mutates membership
        self._lock = threading.RLock()

    def register(self, connection: Any, connection_id: str | None = None) -> ConnectedClient:
        client = ConnectedClient(connection_id=connection_id or uuid4().hex, connection=connection)
        with self._lock:
            self._clients[client.connection_id] = client
        logger.info(f"Client connected: {client.connection_id}")
        return client

    def unregister(self, connection_id: str) -> None:
        with self._lock:
            client = self._clients.pop(connection_id, None)
            if client is None:
                return
            for room in list(client.rooms):
                self._remove_member(room, connection_id)
        logger.info(f"Client disconnected: {connection_id}")

    def authenticate(self, connection_id: str, role: ClientRole) -> str:
        """Record the declared role and move the client into its default room."""
        room = default_room_for(role)
        with self._lock:
            client = self._require(connection_id)
            if client.role is not None and client.role != role:
                previous = default_room_for(client.role)
                client.rooms.discard(previous)
                self._remove_member(previous, connection_id)
            client.role = role
            client.last_activity = _now()
            client.rooms.add(room)
            self._rooms.setdefault(room, set()).add(connection_id)
        logger.info(f"Client authenticated: {connection_id} as {role.value}")
        return room

    def join(self, connection_id: str, room: str) -> int:
        """Add the client to `room`; returns the room's member count."""
        room = self._check_room_name(room)
        with self._lock:
            client = self._require(connection_id)
            client.rooms.add(room)
            members = self._rooms.setdefault(room, set())
            members.add(connection_id)
            return len(members)

    def leave(self, connection_id: str, room: str) -> bool:
        room = self._check_room_name(room)
        with self._lock:
            client = self._require(connection_id)
            if room not in client.rooms:
                return False
            client.rooms.discard(room)
            self._remove_member(room, connection_id)
            return True

    def touch(self, connection_id: str) -> None:
        with self._lock:
            self._require(connection_id).last_activity = _now()

    def get(self, connection_id: str) -> ConnectedClient | None:
        with self._lock:
            return self._clients.get(connection_id)

    def all(self) -> list[ConnectedClient]:
        with self._lock:
            return list(self._clients.values())

    def members_of(self, rooms: Iterable[str]) -> list[ConnectedClient]:
        """Clients in any of `rooms`, each listed once."""
        with self._lock:
            ids: set[str] = set()
            for room in rooms:
                ids |= self._rooms.get(room, set())
            return [self._clients[cid] for cid in sorted(ids) if cid in self._clients]

    def room_size(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def room_names(self) -> list[str]:
        with self._lock:
            return sorted(self._rooms)

    def stats(self) -> dict:
        with self._lock:
            by_role: dict[str, int] = {}
            for client in self._clients.values():
                if client.role is not None:
                    by_role[client.role.value] = by_role.get(client.role.value, 0) + 1
            return {
                "connected_clients": len(self._clients),
                "active_rooms": len(self._rooms),
                "clients_by_role": by_role,
            }

    def _require(self, connection_id: str) -> ConnectedClient:
        client = self._clients.get(connection_id)
        if client is None:
            raise NotFound(f"Connection {connection_id} is not registered")
        return client

    def _remove_member(self, room: str, connection_id: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[room]

    @staticmethod
    def _check_room_name(room: str) -> str:
        room = (room or "").strip()
        if not room or len(room) > MAX_ROOM_NAME_LENGTH:
            raise ValidationError(f"Room name must be 1-{MAX_ROOM_NAME_LENGTH} characters")
        return room

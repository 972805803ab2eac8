import asyncio
import threading
from typing import Any, Dict, Optional, Protocol, Set

from logging_config import get_logger
from schemas.signaling import SIGNAL_TYPES, USER_JOINED, USER_LEFT, SignalingEnvelope

logger = get_logger(__name__)


class SignalingError(ValueError):
    """Malformed signaling input. Raised before any state is touched."""


class Connection(Protocol):
    async def send(self, event: str, data: Any) -> None:
        ...


class RoomRegistry:
    """In-memory room table and signal router.

    Rooms map to the set of member ids currently in them. A member is in at
    most one room. Membership changes happen under ``_lock`` and never await,
    so a join or leave is atomic; notifications are sent once the lock is
    released.
    """

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}
        self._member_rooms: Dict[str, str] = {}
        self._connections: Dict[str, Connection] = {}
        self._lock = threading.Lock()
        logger.info("Initializing in-memory RoomRegistry")

    # -- connections ---------------------------------------------------

    def register(self, member_id: str, connection: Connection):
        if not member_id:
            raise SignalingError("member id is required")
        with self._lock:
            self._connections[member_id] = connection
        logger.debug(f"Registered connection for member {member_id}")

    def unregister(self, member_id: str):
        with self._lock:
            self._connections.pop(member_id, None)
        logger.debug(f"Unregistered connection for member {member_id}")

    def is_connected(self, member_id: str) -> bool:
        return member_id in self._connections

    # -- membership ----------------------------------------------------

    async def join(self, member_id: str, room_id: str) -> Set[str]:
        """Put ``member_id`` in ``room_id`` and return the other members.

        Everyone already in the room is told ``user-joined``. Joining another
        room first leaves the current one.
        """
        if not member_id:
            raise SignalingError("member id is required")
        if not room_id:
            raise SignalingError("room id is required")

        left_room = None
        left_notify: Set[str] = set()
        with self._lock:
            current = self._member_rooms.get(member_id)
            if current == room_id:
                existing = self._rooms[room_id] - {member_id}
                logger.debug(f"Member {member_id} re-joined room {room_id}, no broadcast")
                return set(existing)
            if current is not None:
                left_room = current
                left_notify = self._remove_locked(member_id, current)

            members = self._rooms.get(room_id)
            if members is None:
                members = self._rooms[room_id] = set()
                logger.info(f"Room {room_id} created")
            existing = set(members)
            members.add(member_id)
            self._member_rooms[member_id] = room_id

        logger.info(f"Member {member_id} joined room {room_id} ({len(existing) + 1} members)")
        if left_room is not None:
            await self._broadcast(left_notify, USER_LEFT, member_id)
        await self._broadcast(existing, USER_JOINED, member_id)
        return existing

    async def leave(self, member_id: str) -> Optional[str]:
        """Remove ``member_id`` from its room. Returns the room left, if any.

        Leaving when not in a room is a no-op.
        """
        with self._lock:
            room_id = self._member_rooms.get(member_id)
            if room_id is None:
                return None
            remaining = self._remove_locked(member_id, room_id)

        logger.info(f"Member {member_id} left room {room_id}")
        await self._broadcast(remaining, USER_LEFT, member_id)
        return room_id

    async def disconnect(self, member_id: str) -> Optional[str]:
        """Transport went away: leave the room and forget the connection.

        The connection is forgotten even if the broadcast is cancelled.
        """
        try:
            return await self.leave(member_id)
        finally:
            self.unregister(member_id)

    def _remove_locked(self, member_id: str, room_id: str) -> Set[str]:
        members = self._rooms.get(room_id, set())
        members.discard(member_id)
        self._member_rooms.pop(member_id, None)
        if not members:
            self._rooms.pop(room_id, None)
            logger.info(f"Room {room_id} is empty, removing it")
        return set(members)

    # -- routing -------------------------------------------------------

    async def route(self, sender_id: str, signal_type: str, target: str, payload: Any) -> bool:
        """Forward an offer, answer or ICE candidate to ``target`` only.

        ``sender`` on the delivered message is always ``sender_id``. An
        unknown target is dropped; the sender is not told. Returns whether
        a send was attempted.
        """
        if signal_type not in SIGNAL_TYPES:
            raise SignalingError(f"unknown signal type: {signal_type}")
        envelope = SignalingEnvelope(type=signal_type, target=target, sender=sender_id, payload=payload)

        connection = self._connections.get(envelope.target)
        if connection is None:
            logger.debug(f"Dropping {signal_type} from {sender_id}: target {target} is not connected")
            return False

        try:
            await connection.send(envelope.type, envelope.delivery())
        except Exception as e:
            logger.warning(f"Error routing {signal_type} from {sender_id} to {target}: {e}")
            return False
        logger.debug(f"Routed {signal_type} from {sender_id} to {target}")
        return True

    async def _broadcast(self, member_ids: Set[str], event: str, data: Any):
        send_tasks = []
        for member_id in member_ids:
            connection = self._connections.get(member_id)
            if connection is not None:
                send_tasks.append(connection.send(event, data))
        if not send_tasks:
            return
        results = await asyncio.gather(*send_tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Error broadcasting {event}: {result}")

    # -- queries -------------------------------------------------------

    def members(self, room_id: str) -> Set[str]:
        with self._lock:
            return set(self._rooms.get(room_id, set()))

    def room_of(self, member_id: str) -> Optional[str]:
        return self._member_rooms.get(member_id)

    def rooms(self) -> Dict[str, int]:
        with self._lock:
            return {room_id: len(members) for room_id, members in self._rooms.items()}


room_registry = RoomRegistry()

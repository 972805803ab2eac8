import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pydantic import ValidationError

from constants import DATA_CHANNEL_LABEL, MAX_EARLY_SENDERS, MAX_PENDING_CANDIDATES, STUN_SERVERS
from logging_config import get_logger
from schemas.signaling import (
    ANSWER, CONNECTED, ICE_CANDIDATE, LEAVE_ROOM, OFFER, USER_JOINED, USER_LEFT, USERS_IN_ROOM,
    ChatMessage, IceCandidatePayload, SessionDescription,
)

logger = get_logger(__name__)


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationState(str, Enum):
    NEW = "new"
    HAS_LOCAL_OFFER = "has-local-offer"
    HAS_REMOTE_ANSWER = "has-remote-answer"
    HAS_REMOTE_OFFER = "has-remote-offer"
    HAS_LOCAL_ANSWER = "has-local-answer"
    CHANNEL_OPEN = "channel-open"
    CLOSED = "closed"


_DISCOVERY_ROLES = {
    USERS_IN_ROOM: Role.INITIATOR,
    USER_JOINED: Role.RESPONDER,
    OFFER: Role.RESPONDER,
}


def role_for_discovery(event: str) -> Role:
    """Role toward a peer, decided by how that peer was discovered.

    Peers listed in ``users-in-room`` were there first, so we offer to them.
    Peers announced by ``user-joined`` (or first seen through their offer)
    will offer to us.
    """
    try:
        return _DISCOVERY_ROLES[event]
    except KeyError:
        raise ValueError(f"{event} does not discover peers")


class SignalingTransport(Protocol):
    async def emit(self, event: str, data: Any) -> None:
        ...


def description_to_payload(description: RTCSessionDescription) -> dict:
    return {"sdp": description.sdp, "type": description.type}


def description_from_payload(payload: Any) -> RTCSessionDescription:
    parsed = SessionDescription.model_validate(payload)
    return RTCSessionDescription(sdp=parsed.sdp, type=parsed.type)


def candidate_to_payload(candidate: RTCIceCandidate) -> dict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_payload(payload: Any) -> Optional[RTCIceCandidate]:
    """Parse a browser-style candidate dict. ``None`` means end-of-candidates."""
    parsed = IceCandidatePayload.model_validate(payload)
    text = parsed.candidate
    if not text:
        return None
    if text.startswith("candidate:"):
        text = text[len("candidate:"):]
    try:
        candidate = candidate_from_sdp(text)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f"unparseable ICE candidate {parsed.candidate!r}: {e}")
    candidate.sdpMid = parsed.sdpMid
    candidate.sdpMLineIndex = parsed.sdpMLineIndex
    return candidate


class PeerLink:
    """Negotiation record for one remote member.

    ``role`` is fixed at creation. Negotiation steps run as tasks serialized
    by a per-link lock, so signals from one peer apply in arrival order while
    other peers negotiate independently.
    """

    def __init__(self, remote_id: str, role: Role, connection):
        self.remote_id = remote_id
        self.role = role
        self.connection = connection
        self.state = NegotiationState.NEW
        self.channel = None
        self.remote_description_set = False
        # candidates that arrived before the remote description
        self.pending_candidates: List[Any] = []
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    def __repr__(self):
        return f"PeerLink({self.remote_id!r}, {self.role.value}, {self.state.value})"

    @property
    def is_open(self) -> bool:
        return (
            self.state is NegotiationState.CHANNEL_OPEN
            and self.channel is not None
            and self.channel.readyState == "open"
        )

    def advance(self, state: NegotiationState):
        """Move along the offer/answer states.

        Never leaves ``closed`` and never drops back from ``channel-open``;
        a renegotiation on an open link keeps it open.
        """
        if self.state in (NegotiationState.CLOSED, NegotiationState.CHANNEL_OPEN):
            logger.debug(f"{self!r} ignoring transition to {state.value}")
            return
        logger.debug(f"{self!r} -> {state.value}")
        self.state = state

    def mark_open(self):
        if self.state is NegotiationState.CLOSED:
            return
        self.state = NegotiationState.CHANNEL_OPEN
        logger.info(f"Data channel open with {self.remote_id}")

    def spawn(self, step: Callable, *args) -> asyncio.Task:
        async def run():
            async with self._lock:
                if self.state is NegotiationState.CLOSED:
                    return
                await step(self, *args)

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Negotiation step with {self.remote_id} failed: {error}", exc_info=error)

    async def close(self):
        if self.state is NegotiationState.CLOSED:
            return
        self.state = NegotiationState.CLOSED
        for task in list(self._tasks):
            task.cancel()
        self.pending_candidates.clear()
        if self.channel is not None:
            self.channel.close()
        await self.connection.close()
        logger.info(f"Closed peer link with {self.remote_id}")


class NegotiationCoordinator:
    """Client side of the signaling protocol.

    Keeps one ``PeerLink`` per remote member of the joined room, drives the
    offer/answer/ICE exchange for each, and fans application messages out
    over every open data channel.

    ``transport.emit(event, data)`` sends to the signaling server;
    ``handle_event(event, data)`` takes what the server sends back.
    ``on_message`` is called with a ``ChatMessage`` for each inbound
    application message.
    """

    def __init__(
        self,
        transport: SignalingTransport,
        on_message: Callable[[ChatMessage], Any],
        peer_connection_factory: Optional[Callable[[], Any]] = None,
        ice_servers: Optional[List[str]] = None,
    ):
        self.transport = transport
        self.on_message = on_message
        self.local_id: Optional[str] = None
        self.links: Dict[str, PeerLink] = {}
        # ICE candidates from senders we have no link for yet
        self._early_candidates: Dict[str, List[Any]] = {}
        self._ice_servers = STUN_SERVERS if ice_servers is None else ice_servers
        self._peer_connection_factory = peer_connection_factory or self._create_peer_connection
        self._handlers = {
            CONNECTED: self._on_connected,
            USERS_IN_ROOM: self._on_users_in_room,
            USER_JOINED: self._on_user_joined,
            USER_LEFT: self._on_user_left,
            OFFER: self._on_offer,
            ANSWER: self._on_answer,
            ICE_CANDIDATE: self._on_ice_candidate,
        }

    def _create_peer_connection(self) -> RTCPeerConnection:
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self._ice_servers])
        return RTCPeerConnection(configuration)

    # -- inbound signaling ---------------------------------------------

    async def handle_event(self, event: str, data: Any):
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring signaling event {event}")
            return
        await handler(data)

    async def _on_connected(self, data: Any):
        self.local_id = data.get("id") if isinstance(data, dict) else None
        logger.info(f"Signaling identity is {self.local_id}")

    async def _on_users_in_room(self, members: Any):
        if not isinstance(members, list) or not all(isinstance(m, str) for m in members):
            logger.warning(f"Dropping malformed users-in-room payload: {members!r}")
            return
        logger.info(f"Users already in room: {members}")
        for member_id in members:
            self.add_peer(member_id, role_for_discovery(USERS_IN_ROOM))

    async def _on_user_joined(self, member_id: Any):
        logger.info(f"User joined: {member_id}")
        self.add_peer(member_id, role_for_discovery(USER_JOINED))

    async def _on_user_left(self, member_id: Any):
        if not isinstance(member_id, str):
            logger.warning(f"Dropping malformed user-left payload: {member_id!r}")
            return
        logger.info(f"User left: {member_id}")
        await self.remove_peer(member_id)

    async def _on_offer(self, data: Any):
        sender, payload = _unpack(data, "offer")
        if sender is None:
            logger.warning("Dropping offer without sender")
            return
        try:
            description = description_from_payload(payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed offer from {sender}: {e}")
            return
        link = self.links.get(sender)
        if link is None:
            link = self.add_peer(sender, role_for_discovery(OFFER))
        elif link.state is not NegotiationState.NEW or link.role is Role.INITIATOR:
            logger.info(f"Offer from {sender} while {link.state.value}, treating as renegotiation")
        if link is not None:
            link.spawn(self._accept_offer, description)

    async def _on_answer(self, data: Any):
        sender, payload = _unpack(data, "answer")
        link = self.links.get(sender)
        if link is None:
            logger.warning(f"Dropping answer from {sender}: no peer link")
            return
        try:
            description = description_from_payload(payload)
        except ValidationError as e:
            logger.warning(f"Dropping malformed answer from {sender}: {e}")
            return
        link.spawn(self._accept_answer, description)

    async def _on_ice_candidate(self, data: Any):
        sender, payload = _unpack(data, "candidate")
        if sender is None:
            logger.warning("Dropping ICE candidate without sender")
            return
        link = self.links.get(sender)
        if link is None:
            self._buffer_early_candidate(sender, payload)
            return
        link.spawn(self._add_candidate, payload)

    def _buffer_early_candidate(self, sender: str, payload: Any):
        if sender not in self._early_candidates and len(self._early_candidates) >= MAX_EARLY_SENDERS:
            oldest = next(iter(self._early_candidates))
            del self._early_candidates[oldest]
            logger.warning(f"Too many unknown ICE senders, discarding candidates from {oldest}")
        bucket = self._early_candidates.setdefault(sender, [])
        if len(bucket) >= MAX_PENDING_CANDIDATES:
            logger.warning(f"Dropping early ICE candidate from {sender}: buffer full")
            return
        bucket.append(payload)
        logger.debug(f"Buffered early ICE candidate from {sender} ({len(bucket)} pending)")

    # -- peer links ----------------------------------------------------

    def add_peer(self, remote_id: Any, role: Role) -> Optional[PeerLink]:
        """Create the link for ``remote_id`` unless one exists already."""
        if not isinstance(remote_id, str) or not remote_id or remote_id == self.local_id:
            return None
        link = self.links.get(remote_id)
        if link is not None:
            return link

        link = PeerLink(remote_id, role, self._peer_connection_factory())
        self.links[remote_id] = link
        self._wire_connection(link)
        link.pending_candidates.extend(self._early_candidates.pop(remote_id, []))
        logger.info(f"Created peer link with {remote_id} as {role.value}")

        if role is Role.INITIATOR:
            link.spawn(self._start_offer)
        return link

    async def remove_peer(self, remote_id: Any):
        self._early_candidates.pop(remote_id, None)
        link = self.links.pop(remote_id, None)
        if link is not None:
            await link.close()

    def _wire_connection(self, link: PeerLink):
        connection = link.connection

        @connection.on("datachannel")
        def on_datachannel(channel):
            logger.debug(f"Incoming data channel {channel.label} from {link.remote_id}")
            self._attach_channel(link, channel)

        @connection.on("icecandidate")
        def on_icecandidate(candidate):
            if candidate is not None:
                link.spawn(self._send_candidate, candidate)

        @connection.on("connectionstatechange")
        def on_connectionstatechange():
            state = connection.connectionState
            logger.info(f"Connection with {link.remote_id}: {state}")
            if state == "failed":
                logger.warning(f"Connection with {link.remote_id} failed; link stays until the peer leaves")

    def _attach_channel(self, link: PeerLink, channel):
        link.channel = channel

        @channel.on("open")
        def on_open():
            link.mark_open()

        @channel.on("message")
        def on_message(data):
            self._deliver(link, data)

        @channel.on("close")
        def on_close():
            logger.info(f"Data channel closed with {link.remote_id}")

        # the responder's channel is usually already open when it arrives
        if channel.readyState == "open":
            link.mark_open()

    # -- negotiation steps (run under the link lock) -------------------

    async def _start_offer(self, link: PeerLink):
        connection = link.connection
        self._attach_channel(link, connection.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        offer = await connection.createOffer()
        await connection.setLocalDescription(offer)
        link.advance(NegotiationState.HAS_LOCAL_OFFER)
        await self._emit(OFFER, {
            "target": link.remote_id,
            "offer": description_to_payload(connection.localDescription),
        })
        logger.info(f"Offer sent to {link.remote_id}")

    async def _accept_offer(self, link: PeerLink, description: RTCSessionDescription):
        if getattr(link.connection, "signalingState", "stable") != "stable":
            # no rollback in aiortc: start over on a fresh connection
            await self._replace_connection(link)
        connection = link.connection
        await connection.setRemoteDescription(description)
        link.remote_description_set = True
        link.advance(NegotiationState.HAS_REMOTE_OFFER)
        await self._flush_candidates(link)

        answer = await connection.createAnswer()
        await connection.setLocalDescription(answer)
        link.advance(NegotiationState.HAS_LOCAL_ANSWER)
        await self._emit(ANSWER, {
            "target": link.remote_id,
            "answer": description_to_payload(connection.localDescription),
        })
        logger.info(f"Answer sent to {link.remote_id}")

    async def _replace_connection(self, link: PeerLink):
        old_connection, old_channel = link.connection, link.channel
        logger.info(f"Offer from {link.remote_id} collides with our {old_connection.signalingState} state, restarting negotiation")
        link.connection = self._peer_connection_factory()
        link.channel = None
        link.remote_description_set = False
        link.state = NegotiationState.NEW
        self._wire_connection(link)
        if old_channel is not None:
            old_channel.close()
        await old_connection.close()

    async def _accept_answer(self, link: PeerLink, description: RTCSessionDescription):
        if link.state is not NegotiationState.HAS_LOCAL_OFFER:
            logger.warning(f"Dropping answer from {link.remote_id}: link is {link.state.value}")
            return
        await link.connection.setRemoteDescription(description)
        link.remote_description_set = True
        link.advance(NegotiationState.HAS_REMOTE_ANSWER)
        await self._flush_candidates(link)
        logger.info(f"Answer from {link.remote_id} applied")

    async def _add_candidate(self, link: PeerLink, payload: Any):
        if not link.remote_description_set:
            link.pending_candidates.append(payload)
            return
        await self._apply_candidate(link, payload)

    async def _flush_candidates(self, link: PeerLink):
        pending, link.pending_candidates = link.pending_candidates, []
        for payload in pending:
            await self._apply_candidate(link, payload)

    async def _apply_candidate(self, link: PeerLink, payload: Any):
        try:
            candidate = candidate_from_payload(payload)
        except ValueError as e:
            logger.warning(f"Dropping malformed ICE candidate from {link.remote_id}: {e}")
            return
        if candidate is None:
            return
        await link.connection.addIceCandidate(candidate)
        logger.debug(f"ICE candidate from {link.remote_id} added")

    async def _send_candidate(self, link: PeerLink, candidate: RTCIceCandidate):
        await self._emit(ICE_CANDIDATE, {"target": link.remote_id, "candidate": candidate_to_payload(candidate)})

    async def _emit(self, event: str, data: Any):
        await self.transport.emit(event, data)

    # -- application messages ------------------------------------------

    def broadcast_application_message(self, text: str) -> bool:
        """Send ``text`` to every peer whose channel is open.

        Returns False when there was nobody to send to. Nothing is queued
        for peers that are still negotiating.
        """
        raw = ChatMessage.create(text, self.local_id or "").model_dump_json()
        delivered = False
        for link in self.links.values():
            if not link.is_open:
                continue
            try:
                link.channel.send(raw)
            except Exception as e:
                logger.warning(f"Error sending message to {link.remote_id}: {e}")
                continue
            delivered = True
            logger.debug(f"Message sent to {link.remote_id}")
        if not delivered:
            logger.info("No open data channel, message kept local")
        return delivered

    def _deliver(self, link: PeerLink, data: Any):
        try:
            message = ChatMessage.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed message from {link.remote_id}: {e}")
            return
        if message.sender != link.remote_id:
            message = message.model_copy(update={"sender": link.remote_id})
        self.on_message(message)

    # -- lifecycle -----------------------------------------------------

    def peers(self) -> Dict[str, NegotiationState]:
        return {remote_id: link.state for remote_id, link in self.links.items()}

    def open_peer_count(self) -> int:
        return sum(1 for link in self.links.values() if link.is_open)

    async def reset(self):
        """Close every link. Used when the signaling connection drops."""
        for remote_id in list(self.links):
            await self.remove_peer(remote_id)
        self._early_candidates.clear()

    async def leave(self):
        await self.reset()
        await self._emit(LEAVE_ROOM, None)


def _unpack(data: Any, key: str):
    if not isinstance(data, dict):
        return None, None
    sender = data.get("sender")
    if not isinstance(sender, str) or not sender:
        sender = None
    return sender, data.get(key)

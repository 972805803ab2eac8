from pydantic import BaseModel, Field, field_validator
from typing import Any, Literal, Optional
from datetime import datetime, timezone


# Event names shared by the server and the client
CONNECTED = "connected"
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
USERS_IN_ROOM = "users-in-room"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
ERROR = "error"

SIGNAL_TYPES = (OFFER, ANSWER, ICE_CANDIDATE)

# Key that carries the opaque blob for each routed signal type
PAYLOAD_KEYS = {
    OFFER: "offer",
    ANSWER: "answer",
    ICE_CANDIDATE: "candidate",
}


class Frame(BaseModel):
    """One websocket frame: ``{"type": ..., "data": ...}``."""
    type: str
    data: Any = None

    @field_validator("type")
    @classmethod
    def type_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("type must not be empty")
        return value


class JoinRoomRequest(BaseModel):
    room_id: str = Field(min_length=1)


class SignalRequest(BaseModel):
    """Client to server signal, e.g. ``{"target": id, "offer": {...}}``.

    Any ``sender`` the client puts in the frame is ignored.
    """
    target: str = Field(min_length=1)
    payload: Any

    @classmethod
    def from_frame(cls, signal_type: str, data: Any) -> "SignalRequest":
        if not isinstance(data, dict):
            raise ValueError(f"{signal_type} data must be an object")
        key = PAYLOAD_KEYS[signal_type]
        if key not in data:
            raise ValueError(f"{signal_type} data is missing '{key}'")
        return cls(target=data.get("target") or "", payload=data[key])


class SignalingEnvelope(BaseModel):
    type: Literal["offer", "answer", "ice-candidate"]
    target: str = Field(min_length=1)
    sender: str = Field(min_length=1)
    payload: Any

    def delivery(self) -> dict:
        """What the target receives: the blob under its key plus the sender."""
        return {PAYLOAD_KEYS[self.type]: self.payload, "sender": self.sender}


class SessionDescription(BaseModel):
    sdp: str
    type: Literal["offer", "answer"]


class IceCandidatePayload(BaseModel):
    candidate: str = ""
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class ChatMessage(BaseModel):
    """Application message carried over the data channel."""
    content: str
    sender: str
    timestamp: str

    @classmethod
    def create(cls, content: str, sender: str) -> "ChatMessage":
        return cls(
            content=content,
            sender=sender,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

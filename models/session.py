# models/session.py
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


class PeerRole(str, Enum):
    SCREEN_SHARER = "screenSharer"
    SCREEN_WATCHER = "screenWatcher"


class ConnectionPhase(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    WAITING_FOR_OFFER = "waitingForOffer"
    OFFER_CREATED = "offerCreated"
    WAITING_FOR_ANSWER = "waitingForAnswer"
    ANSWER_CREATED = "answerCreated"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class DataChannelName(str, Enum):
    """Labels of the two cursor channels negotiated inside the offer."""
    CURSOR_POSITIONS = "remoteCursorPositions"
    CURSOR_PING = "remoteCursorPing"


class SessionDescription(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str


class SignalingPayload(BaseModel):
    role: PeerRole
    username: str
    sdp: SessionDescription


class RemoteCursorState(BaseModel):
    """Remote cursor position as fractions of the rendered video area."""
    id: str
    name: str
    color: str
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)


class IceServerConfig(BaseModel):
    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


class ConnectionConfig(BaseModel):
    ice_servers: List[IceServerConfig] = []


class UserConfig(BaseModel):
    username: str
    microphone_enabled_on_connect: bool = False


class SessionConfig(BaseModel):
    """Optional per-session overrides passed to start_sharing/join_session."""
    microphone_enabled_on_connect: Optional[bool] = None
    connection_config: Optional[ConnectionConfig] = None


# --- HTTP request bodies ---

class ShareRequest(BaseModel):
    username: str
    microphone_enabled_on_connect: Optional[bool] = None


class JoinRequest(BaseModel):
    username: str
    url: Optional[str] = None
    microphone_enabled_on_connect: Optional[bool] = None


class AnswerRequest(BaseModel):
    url: Optional[str] = None


class ToggleRequest(BaseModel):
    enabled: bool


class PingRequest(BaseModel):
    id: str

"""Wire models for signaling messages, transfer control records and ICE servers."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Signaling
# ---------------------------------------------------------------------------


class SignalType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    RELAY_DATA = "relay-data"
    WELCOME = "welcome"


class SignalMessage(WireModel):
    """Envelope exchanged with the signaling relay.

    Outbound messages carry ``to``; the relay stamps inbound ones with ``from``.
    """

    type: str
    to: Optional[str] = None
    sender: Optional[str] = Field(None, alias="from")
    data: Dict[str, Any] = Field(default_factory=dict)


class SessionDescription(WireModel):
    type: Literal["offer", "answer", "pranswer", "rollback"]
    sdp: str


class OfferPayload(WireModel):
    sdp: SessionDescription
    public_key: Optional[str] = Field(None, alias="publicKey")
    ice_restart: bool = Field(False, alias="iceRestart")


class AnswerPayload(WireModel):
    sdp: SessionDescription
    public_key: Optional[str] = Field(None, alias="publicKey")


class IceCandidatePayload(WireModel):
    candidate: str
    sdp_mid: Optional[str] = Field(None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(None, alias="sdpMLineIndex")


# ---------------------------------------------------------------------------
# Transfer control records (direct channel text frames and relay-data payloads)
# ---------------------------------------------------------------------------


class FileStart(WireModel):
    type: Literal["file-start"] = "file-start"
    file_id: str = Field(alias="fileId")
    name: str
    size: int = Field(ge=0)
    total_chunks: int = Field(alias="totalChunks", ge=0)


class ChunkRecord(WireModel):
    """Relay-only: ``data`` is base64 of nonce || ciphertext."""

    type: Literal["chunk"] = "chunk"
    file_id: str = Field(alias="fileId")
    data: str


class FileEnd(WireModel):
    type: Literal["file-end"] = "file-end"
    file_id: str = Field(alias="fileId")
    sha256: Optional[str] = None


class TextRecord(WireModel):
    type: Literal["text"] = "text"
    content: str


ControlRecord = Annotated[
    Union[FileStart, ChunkRecord, FileEnd, TextRecord], Field(discriminator="type")
]

_control_records: TypeAdapter = TypeAdapter(ControlRecord)


def parse_record(raw: Union[str, bytes, Dict[str, Any]]) -> ControlRecord:
    """Parse a control record from a JSON frame or an already decoded dict."""
    if isinstance(raw, (str, bytes)):
        return _control_records.validate_json(raw)
    return _control_records.validate_python(raw)


# ---------------------------------------------------------------------------
# Traversal servers
# ---------------------------------------------------------------------------


class ServerKind(str, Enum):
    RELAY = "relay"
    REFLEXIVE = "reflexive"


class TraversalServer(WireModel):
    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None
    latency: Optional[float] = Field(None, exclude=True)

    @field_validator("urls", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @property
    def kind(self) -> Optional[ServerKind]:
        if any(url.startswith(("turn:", "turns:")) for url in self.urls):
            return ServerKind.RELAY
        if any(url.startswith("stun:") for url in self.urls):
            return ServerKind.REFLEXIVE
        return None

    @property
    def primary_url(self) -> str:
        return self.urls[0]

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MediaDescriptor(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    filename: str = ""
    duration: float = 0.0
    current_time: float = 0.0


class PartyGuest(BaseModel):
    sid: str
    name: str
    joined_at: float


class PartyRoom(BaseModel):
    id: str # NP-XXXX-XXXX
    host_sid: str
    host_name: str
    created_at: float

    # Media state, a cached mirror of the host's player
    filename: str = ""
    duration: float = 0.0
    current_time: float = 0.0
    paused: bool = True

    stream_url: Optional[str] = None # http://<lan-ip>:<port>/stream
    local_url: Optional[str] = None
    tunnel_url: Optional[str] = None # Public relay URL, if one was started for this room

    guests: Dict[str, PartyGuest] = Field(default_factory=dict) # sid -> guest


class PartyAction(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    type: Literal["play", "pause", "seek", "sync"]
    time: Optional[float] = None
    from_host: bool = False


class PartyInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    room_id: str
    host_name: str
    guest_count: int
    max_guests: int
    filename: str
    is_streaming: bool

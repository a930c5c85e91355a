from .party import MediaDescriptor, PartyAction, PartyGuest, PartyInfo, PartyRoom
from .player import PlayerState, TrackInfo

__all__ = [
    "MediaDescriptor",
    "PartyAction",
    "PartyGuest",
    "PartyInfo",
    "PartyRoom",
    "PlayerState",
    "TrackInfo",
]

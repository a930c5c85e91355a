import logging
import secrets
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from nautic.models.party import MediaDescriptor, PartyAction, PartyGuest, PartyInfo, PartyRoom
from nautic.services import media
from nautic.services.tunnel import TunnelManager

logger = logging.getLogger(__name__)

ROOM_ID_PREFIX = "NP"
# No 0/O or 1/I
ROOM_ID_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

MAX_GUESTS = 5
SYNC_TOLERANCE_MS = 2000

Emitter = Callable[..., Awaitable[Any]]


def generate_room_id() -> str:
    chars = [secrets.choice(ROOM_ID_ALPHABET) for _ in range(8)]
    return f"{ROOM_ID_PREFIX}-{''.join(chars[:4])}-{''.join(chars[4:])}"


class WatchPartyManager:
    """
    Room registry for synchronized viewing.

    The host drives playback; guests only receive relayed actions and
    heartbeats. A room lives from create_room() until the host leaves or
    closes it.
    """

    def __init__(
        self,
        emit: Emitter,
        address: Callable[[], Tuple[str, int]],
        tunnel: Optional[TunnelManager] = None,
        mark_watch_party: Optional[Callable[[str], None]] = None,
        max_guests: int = MAX_GUESTS,
        drift_tolerance_ms: int = SYNC_TOLERANCE_MS,
    ) -> None:
        self.emit = emit
        self.address = address
        self.tunnel = tunnel
        self.mark_watch_party = mark_watch_party
        self.max_guests = max_guests
        self.drift_tolerance_ms = drift_tolerance_ms

        self.rooms: Dict[str, PartyRoom] = {}
        self.sid_room_map: Dict[str, str] = {}

    # ---------- lookups ----------

    def new_room_id(self) -> str:
        room_id = generate_room_id()
        while room_id in self.rooms:
            room_id = generate_room_id()
        return room_id

    def get_room(self, room_id: str) -> Optional[PartyRoom]:
        return self.rooms.get(room_id)

    def room_for(self, sid: str) -> Optional[PartyRoom]:
        room_id = self.sid_room_map.get(sid)
        return self.rooms.get(room_id) if room_id else None

    def is_host(self, sid: str) -> bool:
        room = self.room_for(sid)
        return room is not None and room.host_sid == sid

    def room_info(self, room_id: str) -> Optional[PartyInfo]:
        room = self.rooms.get(room_id)
        if not room:
            return None
        return PartyInfo(
            room_id=room.id,
            host_name=room.host_name,
            guest_count=len(room.guests),
            max_guests=self.max_guests,
            filename=room.filename,
            is_streaming=room.stream_url is not None,
        )

    def get_sync_state(self, room_id: str) -> Optional[Dict[str, Any]]:
        room = self.rooms.get(room_id)
        if not room:
            return None
        return {"time": room.current_time, "paused": room.paused}

    def is_out_of_sync(self, room_id: str, client_time: float) -> bool:
        room = self.rooms.get(room_id)
        if not room:
            return False
        return abs(room.current_time - client_time) * 1000 > self.drift_tolerance_ms

    # ---------- lifecycle ----------

    async def create_room(
        self,
        host_sid: str,
        host_name: str,
        descriptor: MediaDescriptor,
        enable_internet: bool = False,
    ) -> Dict[str, Any]:
        existing = self.room_for(host_sid)
        if existing and existing.host_sid == host_sid:
            return {"success": False, "error": "Already hosting a party"}
        if host_sid in self.sid_room_map:
            return {"success": False, "error": "Already in another party"}

        host_ip, port = self.address()
        local_url = f"http://{host_ip}:{port}"

        tunnel_url = None
        if enable_internet and self.tunnel is not None:
            logger.info("Internet access requested, starting tunnel...")
            result = await self.tunnel.start(port)
            if result.success and result.url:
                tunnel_url = result.url
                logger.info(f"Tunnel started: {tunnel_url}")
            else:
                # Local sharing still works
                logger.warning(f"Tunnel failed: {result.error}")

        room = PartyRoom(
            id=self.new_room_id(),
            host_sid=host_sid,
            host_name=host_name or "Host",
            created_at=time.time(),
            filename=descriptor.filename,
            duration=descriptor.duration,
            current_time=descriptor.current_time,
            paused=True,
            stream_url=f"{local_url}/stream",
            local_url=local_url,
            tunnel_url=tunnel_url,
        )
        self.rooms[room.id] = room
        self.sid_room_map[host_sid] = room.id
        if self.mark_watch_party:
            self.mark_watch_party(host_sid)

        logger.info(f"Room created: {room.id} by {room.host_name}")
        return {
            "success": True,
            "roomId": room.id,
            "shareUrl": f"nauticplayer://party/{room.id}?host={host_ip}&port={port}",
            "publicShareUrl": f"{tunnel_url}/{room.id}" if tunnel_url else None,
            "shareCode": room.id,
            "tunnelActive": tunnel_url is not None,
        }

    async def join_room(self, room_id: str, sid: str, name: str, remote: bool = False) -> Dict[str, Any]:
        room = self.rooms.get(room_id)
        if not room:
            return {"success": False, "error": "Room not found"}
        if sid == room.host_sid or sid in room.guests:
            return {"success": False, "error": "Already in this room"}
        if len(room.guests) >= self.max_guests:
            return {"success": False, "error": f"Room is full (max {self.max_guests} guests)"}
        if sid in self.sid_room_map:
            return {"success": False, "error": "Already in another party"}

        guest = PartyGuest(sid=sid, name=name or "Guest", joined_at=time.time())
        room.guests[sid] = guest
        self.sid_room_map[sid] = room.id
        if self.mark_watch_party:
            self.mark_watch_party(sid)
        logger.info(f"{guest.name} joined room {room.id}")

        notice = {"name": guest.name, "guestCount": len(room.guests)}
        await self.emit("party:guest-joined", notice, to=room.host_sid)
        for other_sid in room.guests:
            if other_sid != sid:
                await self.emit("party:guest-joined", notice, to=other_sid)

        await self.emit("party:sync", self.sync_payload(room, remote), to=sid)
        return {"success": True, "room": self.room_info(room.id).model_dump(by_alias=True)}

    def sync_payload(self, room: PartyRoom, remote: bool = False) -> Dict[str, Any]:
        # Internet guests get HLS through the tunnel; LAN guests read the file directly
        public_hls = f"{room.tunnel_url}/hls/playlist.m3u8" if room.tunnel_url else None
        use_public = remote and public_hls is not None
        return {
            "filename": room.filename,
            "duration": room.duration,
            "time": room.current_time,
            "paused": room.paused,
            "streamUrl": public_hls if use_public else room.stream_url,
            "localStreamUrl": room.stream_url,
            "publicStreamUrl": public_hls,
            "hostName": room.host_name,
            "needsTranscode": use_public or media.classify(room.filename)["needsTranscode"],
        }

    async def leave_room(self, sid: str) -> None:
        room_id = self.sid_room_map.get(sid)
        if not room_id:
            return
        room = self.rooms.get(room_id)
        if not room:
            self.sid_room_map.pop(sid, None)
            return

        if room.host_sid == sid:
            await self.close_room(room_id, "Host left the party")
            return

        guest = room.guests.pop(sid, None)
        self.sid_room_map.pop(sid, None)
        if not guest:
            return
        logger.info(f"{guest.name} left room {room_id}")

        notice = {"name": guest.name, "guestCount": len(room.guests)}
        await self.emit("party:guest-left", notice, to=room.host_sid)
        for guest_sid in room.guests:
            await self.emit("party:guest-left", notice, to=guest_sid)

    async def close_room(self, room_id: str, reason: str = "Party ended") -> None:
        room = self.rooms.pop(room_id, None)
        if not room:
            return
        logger.info(f"Closing room {room_id}: {reason}")

        self.sid_room_map.pop(room.host_sid, None)
        for guest_sid in room.guests:
            self.sid_room_map.pop(guest_sid, None)

        if room.tunnel_url and self.tunnel is not None:
            logger.info("Stopping tunnel for closed room")
            await self.tunnel.stop()

        for guest_sid in list(room.guests):
            await self.emit("party:closed", {"reason": reason}, to=guest_sid)

    async def close_hosted_room(self, sid: str) -> bool:
        room = self.room_for(sid)
        if room is None or room.host_sid != sid:
            return False
        await self.close_room(room.id, "Host ended the party")
        return True

    # ---------- sync ----------

    async def broadcast_action(self, room_id: str, sender_sid: str, action: Dict[str, Any]) -> bool:
        room = self.rooms.get(room_id)
        if not room:
            return False
        if room.host_sid != sender_sid:
            logger.info(f"Non-host {sender_sid} tried to broadcast an action in {room_id}, ignoring")
            return False
        try:
            parsed = PartyAction.model_validate({**action, "fromHost": True})
        except ValidationError as e:
            logger.warning(f"Ignoring malformed party action {action!r}: {e}")
            return False

        # Cached state is updated before relaying so a following heartbeat sees it
        if parsed.type == "play":
            room.paused = False
        elif parsed.type == "pause":
            room.paused = True
        if parsed.time is not None:
            room.current_time = parsed.time

        payload = parsed.model_dump(by_alias=True, exclude_none=True)
        for guest_sid in list(room.guests):
            await self.emit("party:action", payload, to=guest_sid)
        logger.info(f"Action broadcasted in {room_id}: {parsed.type}")
        return True

    async def heartbeat(self, room_id: str, sender_sid: str, current_time: float, paused: bool) -> bool:
        room = self.rooms.get(room_id)
        if not room or room.host_sid != sender_sid:
            return False
        room.current_time = current_time
        room.paused = paused

        payload = {"time": current_time, "paused": paused}
        for guest_sid in list(room.guests):
            await self.emit("party:heartbeat", payload, to=guest_sid)
        return True

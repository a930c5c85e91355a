import asyncio

import pytest

from conftest import FakeTunnel
from nautic.models.party import MediaDescriptor
from nautic.services import party as party_module
from nautic.services.party import ROOM_ID_ALPHABET, WatchPartyManager, generate_room_id


def make_manager(emitter, tunnel=None, marked=None):
    return WatchPartyManager(
        emit=emitter,
        address=lambda: ("192.168.1.10", 5678),
        tunnel=tunnel,
        mark_watch_party=marked.append if marked is not None else None,
    )


def movie(filename="movie.mp4"):
    return MediaDescriptor(filename=filename, duration=5400, current_time=12)


def create(manager, sid="host", name="Alice", enable_internet=False, filename="movie.mp4"):
    return asyncio.run(manager.create_room(sid, name, movie(filename), enable_internet))


class TestRoomIds:
    def test_format(self):
        room_id = generate_room_id()
        prefix, first, second = room_id.split("-")
        assert prefix == "NP"
        assert len(first) == len(second) == 4
        assert all(c in ROOM_ID_ALPHABET for c in first + second)

    def test_alphabet_has_no_ambiguous_characters(self):
        for c in "0O1I":
            assert c not in ROOM_ID_ALPHABET

    def test_collision_generates_a_new_id(self, emitter, monkeypatch):
        manager = make_manager(emitter)
        ids = iter(["NP-AAAA-AAAA", "NP-AAAA-AAAA", "NP-BBBB-BBBB"])
        monkeypatch.setattr(party_module, "generate_room_id", lambda: next(ids))

        first = create(manager, sid="h1")
        second = create(manager, sid="h2")

        assert first["roomId"] == "NP-AAAA-AAAA"
        assert second["roomId"] == "NP-BBBB-BBBB"


class TestCreate:
    def test_local_party(self, emitter):
        marked = []
        manager = make_manager(emitter, marked=marked)

        result = create(manager)

        assert result["success"] is True
        room_id = result["roomId"]
        assert result["shareCode"] == room_id
        assert result["shareUrl"] == f"nauticplayer://party/{room_id}?host=192.168.1.10&port=5678"
        assert result["publicShareUrl"] is None
        assert result["tunnelActive"] is False
        assert marked == ["host"]

        room = manager.get_room(room_id)
        assert room.stream_url == "http://192.168.1.10:5678/stream"
        assert room.paused is True
        assert room.current_time == 12

    def test_host_cannot_create_twice(self, emitter):
        manager = make_manager(emitter)
        create(manager)
        again = create(manager)
        assert again == {"success": False, "error": "Already hosting a party"}
        assert len(manager.rooms) == 1

    def test_guest_cannot_host_another_party(self, emitter):
        manager = make_manager(emitter)
        first = create(manager, sid="h1")["roomId"]
        asyncio.run(manager.join_room(first, "bob", "Bob"))

        result = create(manager, sid="bob", name="Bob")
        assert result == {"success": False, "error": "Already in another party"}
        assert len(manager.rooms) == 1

        asyncio.run(manager.leave_room("bob"))
        assert manager.get_room(first).guests == {}
        assert manager.room_for("bob") is None

    def test_internet_party_uses_tunnel(self, emitter):
        tunnel = FakeTunnel(url="https://quiet-fox.trycloudflare.com")
        manager = make_manager(emitter, tunnel=tunnel)

        result = create(manager, enable_internet=True)

        assert tunnel.started == [5678]
        assert result["tunnelActive"] is True
        assert result["publicShareUrl"] == f"https://quiet-fox.trycloudflare.com/{result['roomId']}"

    def test_tunnel_failure_still_creates_local_party(self, emitter):
        tunnel = FakeTunnel(url=None)
        manager = make_manager(emitter, tunnel=tunnel)

        result = create(manager, enable_internet=True)

        assert result["success"] is True
        assert result["tunnelActive"] is False
        assert result["publicShareUrl"] is None

    def test_tunnel_not_started_for_local_party(self, emitter):
        tunnel = FakeTunnel(url="https://quiet-fox.trycloudflare.com")
        manager = make_manager(emitter, tunnel=tunnel)
        create(manager)
        assert tunnel.started == []


class TestJoin:
    def test_guest_is_announced_and_synced(self, emitter):
        marked = []
        manager = make_manager(emitter, marked=marked)
        room_id = create(manager)["roomId"]

        result = asyncio.run(manager.join_room(room_id, "bob", "Bob"))

        assert result["success"] is True
        assert result["room"]["roomId"] == room_id
        assert result["room"]["guestCount"] == 1
        assert result["room"]["maxGuests"] == 5
        assert result["room"]["isStreaming"] is True
        assert marked == ["host", "bob"]
        assert emitter.sent_to("host") == [("party:guest-joined", {"name": "Bob", "guestCount": 1})]

        (event, sync), = emitter.sent_to("bob")
        assert event == "party:sync"
        assert sync["streamUrl"] == "http://192.168.1.10:5678/stream"
        assert sync["time"] == 12
        assert sync["paused"] is True
        assert sync["publicStreamUrl"] is None
        assert sync["needsTranscode"] is False

    def test_other_guests_hear_about_newcomers(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))
        asyncio.run(manager.join_room(room_id, "carol", "Carol"))

        assert ("party:guest-joined", {"name": "Carol", "guestCount": 2}) in emitter.sent_to("bob")

    def test_full_room_rejects_sixth_guest(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        for i in range(5):
            assert asyncio.run(manager.join_room(room_id, f"g{i}", f"Guest {i}"))["success"]

        result = asyncio.run(manager.join_room(room_id, "late", "Late"))

        assert result == {"success": False, "error": "Room is full (max 5 guests)"}
        assert len(manager.get_room(room_id).guests) == 5
        assert manager.room_for("late") is None

    def test_unknown_room(self, emitter):
        manager = make_manager(emitter)
        result = asyncio.run(manager.join_room("NP-ZZZZ-ZZZZ", "bob", "Bob"))
        assert result == {"success": False, "error": "Room not found"}

    def test_cannot_join_twice(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))

        assert asyncio.run(manager.join_room(room_id, "bob", "Bob"))["error"] == "Already in this room"
        assert asyncio.run(manager.join_room(room_id, "host", "Alice"))["error"] == "Already in this room"

    def test_cannot_join_two_parties(self, emitter):
        manager = make_manager(emitter)
        first = create(manager, sid="h1")["roomId"]
        second = create(manager, sid="h2")["roomId"]
        asyncio.run(manager.join_room(first, "bob", "Bob"))

        result = asyncio.run(manager.join_room(second, "bob", "Bob"))
        assert result["error"] == "Already in another party"

    def test_internet_guest_gets_hls_through_tunnel(self, emitter):
        tunnel = FakeTunnel(url="https://quiet-fox.trycloudflare.com")
        manager = make_manager(emitter, tunnel=tunnel)
        room_id = create(manager, enable_internet=True)["roomId"]

        asyncio.run(manager.join_room(room_id, "far", "Far", remote=True))
        asyncio.run(manager.join_room(room_id, "near", "Near"))

        far = emitter.sent_to("far")[0][1]
        near = emitter.sent_to("near")[0][1]
        assert far["streamUrl"] == "https://quiet-fox.trycloudflare.com/hls/playlist.m3u8"
        assert far["needsTranscode"] is True
        assert near["streamUrl"] == "http://192.168.1.10:5678/stream"
        assert near["publicStreamUrl"] == far["streamUrl"]

    def test_mkv_needs_transcode(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager, filename="show.mkv")["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))
        assert emitter.sent_to("bob")[0][1]["needsTranscode"] is True


class TestLeave:
    def test_host_leaving_closes_room(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))
        asyncio.run(manager.join_room(room_id, "carol", "Carol"))

        asyncio.run(manager.leave_room("host"))

        assert manager.get_room(room_id) is None
        assert manager.sid_room_map == {}
        closed = emitter.events("party:closed")
        assert sorted(to for _, to in closed) == ["bob", "carol"]
        assert all(data == {"reason": "Host left the party"} for data, _ in closed)

    def test_guest_leaving_notifies_the_rest(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))
        asyncio.run(manager.join_room(room_id, "carol", "Carol"))

        asyncio.run(manager.leave_room("bob"))

        notice = {"name": "Bob", "guestCount": 1}
        assert ("party:guest-left", notice) in emitter.sent_to("host")
        assert ("party:guest-left", notice) in emitter.sent_to("carol")
        assert manager.room_for("bob") is None
        assert manager.get_room(room_id) is not None

    def test_leave_without_room_is_noop(self, emitter):
        manager = make_manager(emitter)
        asyncio.run(manager.leave_room("nobody"))
        assert emitter.calls == []

    def test_closing_room_stops_its_tunnel(self, emitter):
        tunnel = FakeTunnel(url="https://quiet-fox.trycloudflare.com")
        manager = make_manager(emitter, tunnel=tunnel)
        create(manager, enable_internet=True)

        assert asyncio.run(manager.close_hosted_room("host")) is True
        assert tunnel.stopped == 1

    def test_only_host_can_close(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))

        assert asyncio.run(manager.close_hosted_room("bob")) is False
        assert manager.get_room(room_id) is not None


class TestSync:
    def test_host_action_is_relayed_and_cached(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))
        emitter.calls.clear()

        assert asyncio.run(manager.broadcast_action(room_id, "host", {"type": "play", "time": 42}))

        assert emitter.sent_to("bob") == [("party:action", {"type": "play", "time": 42.0, "fromHost": True})]
        room = manager.get_room(room_id)
        assert room.paused is False
        assert room.current_time == 42

    def test_guest_action_is_ignored(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))
        emitter.calls.clear()

        assert asyncio.run(manager.broadcast_action(room_id, "bob", {"type": "pause", "time": 1})) is False
        assert emitter.calls == []
        assert manager.get_room(room_id).current_time == 12

    def test_malformed_action_is_dropped(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        assert asyncio.run(manager.broadcast_action(room_id, "host", {"type": "rewind"})) is False

    def test_heartbeat_from_host_only(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        asyncio.run(manager.join_room(room_id, "bob", "Bob"))
        emitter.calls.clear()

        assert asyncio.run(manager.heartbeat(room_id, "bob", 99.0, False)) is False
        assert emitter.calls == []

        assert asyncio.run(manager.heartbeat(room_id, "host", 30.0, False))
        assert emitter.sent_to("bob") == [("party:heartbeat", {"time": 30.0, "paused": False})]
        assert manager.get_sync_state(room_id) == {"time": 30.0, "paused": False}

    @pytest.mark.parametrize("client_time,expected", [(12.0, False), (13.9, False), (14.0, False), (14.5, True), (9.0, True)])
    def test_drift(self, emitter, client_time, expected):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        assert manager.is_out_of_sync(room_id, client_time) is expected

    def test_room_info(self, emitter):
        manager = make_manager(emitter)
        room_id = create(manager)["roomId"]
        info = manager.room_info(room_id)
        assert info.host_name == "Alice"
        assert info.guest_count == 0
        assert info.filename == "movie.mp4"
        assert manager.room_info("NP-NONE-NONE") is None

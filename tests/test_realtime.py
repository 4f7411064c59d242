import asyncio
import logging
import threading
from concurrent.futures import Future
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from bson import ObjectId

from database import utcnow
from realtime import RealtimeChannel, SocketConnectionRefused, SocketHandlers, trip_room, user_room


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=2)
    loop.close()


@pytest.fixture
def server():
    server = Mock()
    server.emit = AsyncMock()
    server.save_session = AsyncMock()
    server.enter_room = AsyncMock()
    server.leave_room = AsyncMock()
    server.get_session = AsyncMock(return_value={})
    return server


@pytest.fixture
def handlers(server, db, policy):
    return SocketHandlers(server, lambda: db, policy)


def _token_for(db, user, expires_in=timedelta(days=1)):
    token = f"token-{user['id']}"
    db["session"].insert_one({"user_id": user["id"], "token": token, "expires_at": utcnow() + expires_in})
    return token


def test_room_names():
    assert trip_room("t1") == "trip-t1"
    assert user_room("u1") == "user-u1"


def test_publish_without_loop_drops_event(server):
    assert RealtimeChannel(server).publish("newMessage", {"text": "hi"}) is None
    server.emit.assert_not_called()


def test_publish_emits_serialized_payload(server, loop):
    channel = RealtimeChannel(server)
    channel.bind_loop(loop)
    oid = ObjectId()

    future = channel.publish("newMessage", {"message": {"_id": oid}}, room="trip-1")
    future.result(timeout=2)

    server.emit.assert_awaited_once_with("newMessage", {"message": {"id": str(oid)}}, to="trip-1")


def test_publish_failure_stays_inside_the_future(server, loop):
    server.emit = AsyncMock(side_effect=RuntimeError("socket gone"))
    channel = RealtimeChannel(server)
    channel.bind_loop(loop)

    future = channel.publish("tripUpdated", {"trip": {}})

    with pytest.raises(RuntimeError):
        future.result(timeout=2)


def test_failed_emit_is_logged(caplog):
    future = Future()
    future.set_exception(RuntimeError("socket gone"))
    with caplog.at_level(logging.WARNING, logger="realtime"):
        RealtimeChannel._report(future, "newMessage", "trip-1")
    assert "newMessage" in caplog.text
    assert "socket gone" in caplog.text


def test_register_binds_client_events(server, handlers):
    handlers.register()
    events = [c.args[0] for c in server.on.call_args_list]
    assert events == ["connect", "disconnect", "joinTrip", "leaveTrip"]


def test_connect_enters_user_room(db, server, handlers, alice):
    token = _token_for(db, alice)

    asyncio.run(handlers.connect("sid-1", {}, {"token": token}))

    server.save_session.assert_awaited_once_with("sid-1", {"user_id": alice["id"]})
    server.enter_room.assert_awaited_once_with("sid-1", user_room(alice["id"]))


@pytest.mark.parametrize("auth", [None, {}, {"token": "unknown"}])
def test_connect_refuses_without_valid_token(handlers, auth):
    with pytest.raises(SocketConnectionRefused):
        asyncio.run(handlers.connect("sid-1", {}, auth))


def test_connect_refuses_expired_session(db, handlers, alice):
    token = _token_for(db, alice, expires_in=timedelta(days=-1))
    with pytest.raises(SocketConnectionRefused):
        asyncio.run(handlers.connect("sid-1", {}, {"token": token}))


def test_join_trip_room_requires_membership(server, handlers, trips, trip, bob):
    trip_id = str(trip["_id"])
    server.get_session = AsyncMock(return_value={"user_id": bob["id"]})

    assert asyncio.run(handlers.join_trip("sid-2", {"trip_id": trip_id}))["success"] is False
    server.enter_room.assert_not_called()

    trips.join_trip(trip_id, bob)
    assert asyncio.run(handlers.join_trip("sid-2", {"trip_id": trip_id})) == {"success": True}
    server.enter_room.assert_awaited_once_with("sid-2", trip_room(trip_id))


def test_join_trip_with_bad_id_is_refused(server, handlers, alice):
    server.get_session = AsyncMock(return_value={"user_id": alice["id"]})
    assert asyncio.run(handlers.join_trip("sid-3", {"trip_id": "nope"}))["success"] is False


def test_leave_trip_room(server, handlers):
    assert asyncio.run(handlers.leave_trip("sid-4", {"trip_id": "t1"})) == {"success": True}
    server.leave_room.assert_awaited_once_with("sid-4", "trip-t1")


def test_database_lookups_run_off_the_event_loop(db, server, policy, trips, trip, bob):
    trips.join_trip(str(trip["_id"]), bob)
    token = _token_for(db, bob)
    lookup_threads = []

    def get_database():
        lookup_threads.append(threading.get_ident())
        return db

    handlers = SocketHandlers(server, get_database, policy)
    server.get_session = AsyncMock(return_value={"user_id": bob["id"]})

    asyncio.run(handlers.connect("sid-5", {}, {"token": token}))
    assert asyncio.run(handlers.join_trip("sid-5", {"trip_id": str(trip["_id"])})) == {"success": True}

    assert len(lookup_threads) == 2
    assert threading.get_ident() not in lookup_threads


def test_connect_refuses_non_dict_auth(handlers):
    with pytest.raises(SocketConnectionRefused):
        asyncio.run(handlers.connect("sid-6", {}, "token-as-string"))


@pytest.mark.parametrize("payload", ["trip-1", ["trip-1"], None, 42])
def test_room_events_ignore_malformed_payloads(server, handlers, alice, payload):
    server.get_session = AsyncMock(return_value={"user_id": alice["id"]})

    assert asyncio.run(handlers.join_trip("sid-7", payload))["success"] is False
    assert asyncio.run(handlers.leave_trip("sid-7", payload)) == {"success": True}
    server.enter_room.assert_not_called()
    server.leave_room.assert_not_called()

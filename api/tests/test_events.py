import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from spinwheel.db import SessionLocal
from spinwheel.events import ADMIN, PUBLIC, EventHub
from spinwheel.presence import PresenceTracker
from spinwheel.security import decode_token

from conftest import make_code, make_user


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def accept(self):
        pass

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("closed")
        self.sent.append(message)


def user_token(client, username):
    return client.post("/api/auth/login", json={"username": username}).json()["token"]


def test_admin_socket_gets_initial_snapshot(client, db, admin_token):
    make_user(db, "alice")
    make_code(db, "SNAP01")

    with client.websocket_connect(f"/ws/admin?token={admin_token}") as ws:
        msg = ws.receive_json()
    assert msg["event"] == "kpi:update"
    assert msg["data"] == {
        "totalUsers": 1,
        "activeUsers": 0,
        "totalSpins": 0,
        "availableCodes": 1,
        "usedCodes": 0,
    }


@pytest.mark.parametrize("path", ["/ws/admin", "/ws"])
def test_sockets_reject_bad_tokens(client, path):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"{path}?token=garbage") as ws:
            ws.receive_json()
    assert exc.value.code == 1008


def test_player_token_cannot_open_admin_socket(client):
    token = user_token(client, "alice")
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/admin?token={token}") as ws:
            ws.receive_json()


def test_presence_counts_users_not_sockets(client):
    alice = user_token(client, "alice")
    bob = user_token(client, "bob")

    with client.websocket_connect(f"/ws?token={alice}") as a1:
        assert a1.receive_json() == {"event": "presence:registered",
                                     "data": {"userId": decode_token(alice, "user")["sub"], "activeUsers": 1}}
        with client.websocket_connect(f"/ws?token={alice}") as a2:
            assert a2.receive_json()["data"]["activeUsers"] == 1
            with client.websocket_connect(f"/ws?token={bob}") as b1:
                assert b1.receive_json()["data"]["activeUsers"] == 2


def test_admin_sees_presence_transitions(client, admin_token):
    alice = user_token(client, "alice")

    with client.websocket_connect(f"/ws/admin?token={admin_token}") as admin_ws:
        assert admin_ws.receive_json()["data"]["activeUsers"] == 0

        with client.websocket_connect(f"/ws?token={alice}") as player:
            player.receive_json()
            update = admin_ws.receive_json()
            assert update["event"] == "kpi:update"
            assert update["data"]["activeUsers"] == 1

        update = admin_ws.receive_json()
        assert update["event"] == "kpi:update"
        assert update["data"]["activeUsers"] == 0


def test_spin_is_pushed_to_admins(client, db, admin_token):
    make_user(db, "alice")
    make_code(db, "LIVE01")

    with client.websocket_connect(f"/ws/admin?token={admin_token}") as ws:
        ws.receive_json()
        r = client.post("/api/game/spin", json={"code": "LIVE01", "username": "alice"})
        assert r.status_code == 200

        spin = ws.receive_json()
        assert spin["event"] == "spin:new"
        assert spin["data"]["code"] == "LIVE01"
        assert spin["data"]["usedByUsername"] == "alice"
        assert spin["data"]["prize"] == r.json()["prize"]["text"]

        kpis = ws.receive_json()
        assert kpis["event"] == "kpi:update"
        assert kpis["data"]["totalSpins"] == 1
        assert kpis["data"]["usedCodes"] == 1
        assert kpis["data"]["availableCodes"] == 0


def test_code_generation_is_pushed_to_admins(client, admin_token):
    headers = {"Authorization": f"Bearer {admin_token}"}
    with client.websocket_connect(f"/ws/admin?token={admin_token}") as ws:
        ws.receive_json()
        client.post("/api/admin/spin-codes/generate", headers=headers, json={"count": 3})

        assert ws.receive_json()["data"]["availableCodes"] == 3
        assert ws.receive_json() == {"event": "code:new", "data": {"count": 3}}


def test_broadcast_without_admins_is_skipped():
    hub = EventHub(PresenceTracker(), session_factory=SessionLocal)
    assert hub.broadcast_kpis() is None


def test_unknown_scope_rejected():
    hub = EventHub(PresenceTracker(), session_factory=SessionLocal)
    with pytest.raises(ValueError):
        hub.publish("everyone", "spin:new", {})


def test_publish_keeps_order_and_drops_dead_sockets():
    async def scenario():
        hub = EventHub(PresenceTracker(), session_factory=SessionLocal)
        hub.bind_loop(asyncio.get_running_loop())
        good, dead = FakeSocket(), FakeSocket(fail=True)
        await hub.connect(good, ADMIN)
        await hub.connect(dead, ADMIN)

        for i in range(5):
            hub.publish(ADMIN, "tick", {"n": i})
        # nobody listens on the public scope
        hub.publish(PUBLIC, "tick", {"n": -1})
        await asyncio.sleep(0.05)
        return hub, good

    hub, good = asyncio.run(scenario())
    assert [m["data"]["n"] for m in good.sent] == [0, 1, 2, 3, 4]
    assert hub.subscribers(ADMIN) == 1


def test_broadcast_kpis_with_admin_connected(db):
    make_user(db, "alice")

    async def scenario():
        hub = EventHub(PresenceTracker(), session_factory=SessionLocal)
        hub.bind_loop(asyncio.get_running_loop())
        sock = FakeSocket()
        await hub.connect(sock, ADMIN)
        stats = hub.broadcast_kpis(db)
        await asyncio.sleep(0.05)
        return stats, sock

    stats, sock = asyncio.run(scenario())
    assert stats.total_users == 1
    assert sock.sent == [{"event": "kpi:update", "data": stats.model_dump(by_alias=True)}]


def test_rename_is_pushed_to_admins(client, db, admin_token):
    user = make_user(db, "frank")
    headers = {"Authorization": f"Bearer {admin_token}"}
    with client.websocket_connect(f"/ws/admin?token={admin_token}") as ws:
        ws.receive_json()
        client.put(f"/api/admin/users/{user.id}", headers=headers, json={"username": "franky"})

        assert ws.receive_json() == {"event": "user:update", "data": {"id": user.id, "username": "franky"}}
        assert ws.receive_json()["event"] == "kpi:update"


def test_stalled_socket_does_not_hold_up_others():
    class StalledSocket(FakeSocket):
        async def send_json(self, message):
            await asyncio.sleep(10)

    async def scenario():
        hub = EventHub(PresenceTracker(), session_factory=SessionLocal, send_timeout=0.05)
        hub.bind_loop(asyncio.get_running_loop())
        good, stalled = FakeSocket(), StalledSocket()
        await hub.connect(stalled, ADMIN)
        await hub.connect(good, ADMIN)

        hub.publish(ADMIN, "tick", {"n": 1})
        hub.publish(ADMIN, "tick", {"n": 2})
        await asyncio.sleep(0.5)
        return hub, good

    hub, good = asyncio.run(scenario())
    assert [m["data"]["n"] for m in good.sent] == [1, 2]
    assert hub.subscribers(ADMIN) == 1

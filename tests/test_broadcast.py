"""
Tests for the real-time fan-out.

Tests cover:
- publish reaches every connected client
- A client whose send fails is dropped, others still receive
- A client whose send never completes is dropped after the send timeout
- Clients leaving mid-publish don't affect the fan-out
- End to end: a WebSocket client receives totals_updated after an update
"""

import asyncio

from pledge_tracker.aggregation import TotalsSnapshot
from pledge_tracker.broadcast import ConnectionManager, broadcast_totals


class FakeWebSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(message)


class TestConnectionManager:

    def test_publish_to_all_clients(self):
        manager = ConnectionManager()
        sockets = [FakeWebSocket(), FakeWebSocket()]

        async def run():
            for ws in sockets:
                await manager.connect(ws)
            return await manager.publish("totals_updated", {"grandTotal": 100})

        assert asyncio.run(run()) == 2
        for ws in sockets:
            assert ws.accepted
            assert ws.sent == [{"event": "totals_updated", "data": {"grandTotal": 100}}]

    def test_no_clients(self):
        assert asyncio.run(ConnectionManager().publish("totals_updated", {})) == 0

    def test_failed_client_dropped(self):
        manager = ConnectionManager()
        good, bad = FakeWebSocket(), FakeWebSocket(fail=True)

        async def run():
            await manager.connect(good)
            await manager.connect(bad)
            return await manager.publish("totals_updated", {"grandTotal": 1})

        assert asyncio.run(run()) == 1
        assert len(good.sent) == 1
        assert manager.connections == {good}

    def test_stalled_client_dropped(self):
        """A send that never completes cannot hold up the fan-out."""
        manager = ConnectionManager(send_timeout=0.05)

        class StalledWebSocket(FakeWebSocket):
            async def send_json(self, message):
                await asyncio.Event().wait()

        good, stalled = FakeWebSocket(), StalledWebSocket()

        async def run():
            await manager.connect(good)
            await manager.connect(stalled)
            return await asyncio.wait_for(
                manager.publish("totals_updated", {"grandTotal": 1}), timeout=5
            )

        assert asyncio.run(run()) == 1
        assert good.sent == [{"event": "totals_updated", "data": {"grandTotal": 1}}]
        assert manager.connections == {good}

    def test_disconnect_during_publish(self):
        """A client leaving while a send is in flight is simply removed."""
        manager = ConnectionManager()

        class LeavingWebSocket(FakeWebSocket):
            async def send_json(self, message):
                manager.disconnect(self)
                await super().send_json(message)

        leaving, staying = LeavingWebSocket(), FakeWebSocket()

        async def run():
            await manager.connect(leaving)
            await manager.connect(staying)
            return await manager.publish("totals_updated", {})

        assert asyncio.run(run()) == 2
        assert manager.connections == {staying}


class TestBroadcastTotals:

    def test_failures_are_swallowed(self):
        class BrokenBroadcaster:
            async def publish(self, topic, payload):
                raise RuntimeError("transport down")

        snapshot = TotalsSnapshot(paddle_total=100, text_total=0, goal_amount=100_000_000)

        asyncio.run(broadcast_totals(BrokenBroadcaster(), snapshot, source="poller"))


class TestWebSocketEndpoint:

    def test_client_receives_totals_after_update(self, client):
        with client.websocket_connect("/ws") as websocket:
            response = client.put("/api/paddle-pledges/2500", json={"count": 10})
            assert response.status_code == 200

            message = websocket.receive_json()

        assert message["event"] == "totals_updated"
        assert message["data"]["grandTotal"] == 25000
        assert message["data"]["paddleTotalFormatted"] == "$250"

    def test_client_removed_on_disconnect(self, client):
        with client.websocket_connect("/ws"):
            pass

        client.get("/health")
        assert client.app.state.connections.connections == set()

"""
Tests for the notification gateway: fan-out, relay and broker subscription.
"""
import json
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

from conftest import no_sleep, run
from compute_jobs.gateway import NotificationGateway, relay_from_broker
from compute_jobs.main import create_app
from compute_jobs.models import JobCreatedEvent


def client_socket(fail=False):
    ws = MagicMock()
    ws.send_text = AsyncMock(side_effect=ConnectionError("gone") if fail else None)
    ws.close = AsyncMock()
    return ws


CREATED_FRAME = json.dumps({"type": "job_created", "jobId": "job-1"})


class TestFanOut:

    def test_broadcast_reaches_every_client(self):
        gateway = NotificationGateway()
        a, b = client_socket(), client_socket()

        async def scenario():
            await gateway.register(a)
            await gateway.register(b)
            return await gateway.broadcast(JobCreatedEvent(jobId="job-1"))

        assert run(scenario()) == 2
        a.send_text.assert_awaited_once_with(CREATED_FRAME.replace(" ", ""))
        b.send_text.assert_awaited_once()

    def test_dead_connections_are_pruned(self):
        gateway = NotificationGateway()
        alive, dead = client_socket(), client_socket(fail=True)

        async def scenario():
            await gateway.register(alive)
            await gateway.register(dead)
            return await gateway.broadcast(JobCreatedEvent(jobId="job-1"))

        assert run(scenario()) == 1
        assert gateway.connection_count == 1

    def test_relay_skips_sender(self):
        gateway = NotificationGateway()
        worker, browser = client_socket(), client_socket()

        async def scenario():
            await gateway.register(worker)
            await gateway.register(browser)
            return await gateway.relay_raw(CREATED_FRAME, source=worker)

        assert run(scenario()) == 1
        worker.send_text.assert_not_awaited()
        browser.send_text.assert_awaited_once()

    def test_malformed_frames_are_ignored(self):
        gateway = NotificationGateway()
        browser = client_socket()

        async def scenario():
            await gateway.register(browser)
            counts = [
                await gateway.relay_raw("not json"),
                await gateway.relay_raw('{"type": "unknown", "jobId": "x"}'),
                await gateway.relay_raw('{"type": "job_progress", "jobId": "x"}'),
            ]
            return counts

        assert run(scenario()) == [0, 0, 0]
        browser.send_text.assert_not_awaited()

    def test_close_disconnects_clients(self):
        gateway = NotificationGateway()
        ws = client_socket()

        async def scenario():
            await gateway.register(ws)
            await gateway.close()

        run(scenario())
        ws.close.assert_awaited_once()
        assert gateway.connection_count == 0


class TestBrokerRelay:

    @staticmethod
    def fake_subscription(messages):
        async def listen():
            for m in messages:
                yield m

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.listen = listen
        pubsub.aclose = AsyncMock()
        client = MagicMock()
        client.pubsub.return_value = pubsub
        client.aclose = AsyncMock()
        return client, pubsub

    def test_messages_are_rebroadcast(self):
        gateway = NotificationGateway()
        browser = client_socket()
        client, pubsub = self.fake_subscription([
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": CREATED_FRAME},
            {"type": "message", "data": "garbage"},
        ])
        factory = MagicMock(side_effect=[client, ConnectionError("refused")])

        async def scenario():
            await gateway.register(browser)
            await relay_from_broker(gateway, "redis://localhost:6379", "job-updates",
                                    max_retries=1, client_factory=factory, sleep=no_sleep)

        run(scenario())
        pubsub.subscribe.assert_awaited_once_with("job-updates")
        browser.send_text.assert_awaited_once()
        pubsub.aclose.assert_awaited_once()
        client.aclose.assert_awaited_once()
        # Clean end of the stream triggers a fresh subscription attempt
        assert factory.call_count == 2

    def test_gives_up_after_retries(self):
        factory = MagicMock(side_effect=ConnectionError("refused"))

        run(relay_from_broker(NotificationGateway(), "redis://localhost:6379",
                              max_retries=3, client_factory=factory, sleep=no_sleep))

        assert factory.call_count == 3

    def test_rest_url_disables_relay(self):
        factory = MagicMock()
        run(relay_from_broker(NotificationGateway(), "https://example.upstash.io", client_factory=factory))
        factory.assert_not_called()


def test_websocket_frames_relay_between_clients(store):
    app = create_app(store=store, relay_broker=False)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as browser, client.websocket_connect("/ws") as worker:
            worker.send_text("not an event")
            worker.send_text(CREATED_FRAME)
            assert browser.receive_json() == {"type": "job_created", "jobId": "job-1"}


def test_root_websocket_path_is_served(store):
    app = create_app(store=store, relay_broker=False)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as browser, client.websocket_connect("/") as worker:
            worker.send_text(CREATED_FRAME)
            assert browser.receive_json() == {"type": "job_created", "jobId": "job-1"}

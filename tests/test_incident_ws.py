"""Tests for the websocket session (driven by a fake WebSocketApp, no network)."""
import json
import time

from chamado_sync.core.command_codec import GetState, StartTimer
from chamado_sync.core.escalation_client import SEND_FAILED, EscalationClient
from chamado_sync.core.event_bus import EVT_CONNECTIVITY, EventBus
from chamado_sync.feeds.incident_ws import IncidentFeedThread

from conftest import timer_update


def _wait(pred, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def _session(fake_ws_app, **kw):
    kw.setdefault("reconnect_delay_s", 0.05)
    return IncidentFeedThread("wss://escalation.test/ws", app_factory=fake_ws_app, **kw)


class TestConnectAndSend:
    def test_connect_marks_connected_and_sends_json(self, fake_ws_app):
        s = _session(fake_ws_app)
        try:
            assert s.send(GetState(1)) is False
            s.connect()
            assert _wait(lambda: s.is_connected)
            assert s.send(StartTimer(123456, level=1, duration=1200)) is True
            app = fake_ws_app.instances[-1]
            assert [json.loads(m) for m in app.sent] == [
                {"action": "start_timer", "chamado": 123456, "level": 1, "duration": 1200},
            ]
            assert s.stats()["commands_sent"] == 1
            assert s.stats()["send_failures"] == 1
        finally:
            s.close(timeout=2.0)

    def test_connect_is_idempotent(self, fake_ws_app):
        s = _session(fake_ws_app)
        try:
            s.connect()
            s.connect()
            assert _wait(lambda: s.is_connected)
            assert len(fake_ws_app.instances) == 1
        finally:
            s.close(timeout=2.0)

    def test_ping_interval_is_clamped_above_timeout(self, fake_ws_app):
        s = _session(fake_ws_app, ping_interval_s=5, ping_timeout_s=10)
        try:
            s.connect()
            assert _wait(lambda: s.is_connected)
            kwargs = fake_ws_app.instances[-1].run_kwargs
            assert kwargs["ping_interval"] > kwargs["ping_timeout"]
            assert kwargs["reconnect"] == 0
        finally:
            s.close(timeout=2.0)


class TestInbound:
    def test_events_reach_subscribers_and_garbage_is_dropped(self, fake_ws_app):
        s = _session(fake_ws_app)
        got = []
        s.subscribe(got.append)
        try:
            s.connect()
            assert _wait(lambda: s.is_connected)
            app = fake_ws_app.instances[-1]
            app.deliver(timer_update(123456, running=1))
            app.deliver("{not json")
            app.deliver({"type": "pong"})
            app.deliver(json.dumps(timer_update(7, running=2, finished=(1,))).encode("utf-8"))
            assert [st.incident_id for st in got] == [123456, 7]
            assert s.messages_in == 4
            assert s.messages_dropped == 2
            assert s.heartbeats.age("ws_message") is not None
        finally:
            s.close(timeout=2.0)

    def test_subscriber_error_does_not_break_session(self, fake_ws_app):
        s = _session(fake_ws_app)
        got = []

        def bad(_state):
            raise RuntimeError("ui bug")

        s.subscribe(bad)
        s.subscribe(got.append)
        try:
            s.connect()
            assert _wait(lambda: s.is_connected)
            fake_ws_app.instances[-1].deliver(timer_update(1, running=1))
            assert len(got) == 1
        finally:
            s.close(timeout=2.0)


class TestReconnect:
    def test_drop_then_reconnect_after_delay(self, fake_ws_app):
        bus = EventBus()
        bus_seen = []
        bus.subscribe(EVT_CONNECTIVITY, lambda e: bus_seen.append(e.payload["connected"]))
        s = _session(fake_ws_app, reconnect_delay_s=0.2, bus=bus)
        flags = []
        s.on_connectivity(flags.append)
        try:
            s.connect()
            assert _wait(lambda: s.is_connected)
            fake_ws_app.instances[0].close()  # server drops the connection
            assert _wait(lambda: not s.is_connected)
            dropped_at = time.time()
            assert _wait(lambda: len(fake_ws_app.instances) == 2)
            assert time.time() - dropped_at >= 0.1
            assert _wait(lambda: s.is_connected)
            assert flags == [True, False, True]
            assert bus_seen == [True, False, True]
            assert s.reconnects == 1
            # nothing is resent after reconnect
            assert fake_ws_app.instances[1].sent == []
        finally:
            s.close(timeout=2.0)

    def test_failed_attempts_keep_retrying(self, fake_ws_app):
        fake_ws_app.script = ["refuse", "refuse", "refuse", "open"]
        s = _session(fake_ws_app, reconnect_delay_s=0.02)
        try:
            s.connect()
            assert _wait(lambda: s.is_connected)
            assert len(fake_ws_app.instances) == 4
            assert s.connect_attempts == 4
            assert s.reconnects == 3
        finally:
            s.close(timeout=2.0)

    def test_send_while_disconnected_fails_without_queueing(self, fake_ws_app):
        fake_ws_app.script = ["refuse", "open"]
        s = _session(fake_ws_app, reconnect_delay_s=0.3)
        try:
            s.connect()
            assert _wait(lambda: fake_ws_app.instances and s.reconnects >= 1)
            assert s.send(GetState(9)) is False
            assert _wait(lambda: s.is_connected)
            assert fake_ws_app.instances[-1].sent == []
        finally:
            s.close(timeout=2.0)

    def test_close_cancels_pending_reconnect(self, fake_ws_app):
        fake_ws_app.script = ["refuse"]
        s = _session(fake_ws_app, reconnect_delay_s=30.0)
        s.connect()
        assert _wait(lambda: s.reconnects == 1)
        started = time.time()
        s.close(timeout=2.0)
        assert not s.is_alive()
        assert time.time() - started < 2.0
        assert len(fake_ws_app.instances) == 1
        assert s.send(GetState(1)) is False

    def test_close_while_connected(self, fake_ws_app):
        s = _session(fake_ws_app)
        s.connect()
        assert _wait(lambda: s.is_connected)
        s.close(timeout=2.0)
        assert not s.is_connected
        assert not s.is_alive()
        assert len(fake_ws_app.instances) == 1


class TestClientOverSession:
    def test_connect_reconnect_close_through_client(self, fake_ws_app, config):
        bus = EventBus()
        session = _session(fake_ws_app, bus=bus)
        client = EscalationClient(config, transport=session, bus=bus)
        flags = []
        client.on_connectivity(flags.append)
        try:
            client.connect()
            assert _wait(lambda: client.is_connected)
            assert client.watch([123456]) == {123456: True}
            first = fake_ws_app.instances[0]
            assert [json.loads(m) for m in first.sent] == [{"action": "get_state", "chamado": 123456}]

            first.deliver(timer_update(123456, running=1, remaining=900))
            assert client.remaining(123456) == 900

            first.close()
            assert _wait(lambda: len(fake_ws_app.instances) == 2 and client.is_connected)
            assert flags == [True, False, True]
            time.sleep(0.1)
            second = fake_ws_app.instances[1]
            # the watch set is not re-requested until asked
            assert second.sent == []

            report = client.resync()
            assert report.requested == {123456: True}
            assert [json.loads(m) for m in second.sent] == [{"action": "get_state", "chamado": 123456}]
        finally:
            client.close()
        assert _wait(lambda: not session.is_alive())
        assert not client.is_connected
        # transport faults come back as results, never as exceptions
        assert client.update_operator(123456, "Ana").reasons == [SEND_FAILED]

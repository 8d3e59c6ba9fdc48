"""Tests for the per-client event bus."""
import json

from chamado_sync.core.event_bus import EVT_CONNECTIVITY, EVT_INCIDENT_UPDATE, EventBus, make_event


class TestEventBus:
    def test_typed_and_wildcard_subscribers(self):
        bus = EventBus()
        typed, every = [], []
        bus.subscribe(EVT_CONNECTIVITY, typed.append)
        bus.subscribe("*", every.append)
        bus.publish(make_event(EVT_CONNECTIVITY, {"connected": True}, actor="transport"))
        bus.publish(make_event(EVT_INCIDENT_UPDATE, {"chamado": 1}))
        assert [e.type for e in typed] == [EVT_CONNECTIVITY]
        assert [e.type for e in every] == [EVT_CONNECTIVITY, EVT_INCIDENT_UPDATE]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe(EVT_CONNECTIVITY, seen.append)
        bus.unsubscribe(EVT_CONNECTIVITY, seen.append)
        bus.unsubscribe(EVT_CONNECTIVITY, seen.append)
        bus.unsubscribe("NEVER_SUBSCRIBED", seen.append)
        bus.publish(make_event(EVT_CONNECTIVITY, {"connected": False}))
        assert seen == []
        assert bus.stats() == {EVT_CONNECTIVITY: 0}

    def test_subscriber_error_is_isolated(self):
        bus = EventBus()
        seen = []

        def boom(_event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(EVT_INCIDENT_UPDATE, boom)
        bus.subscribe(EVT_INCIDENT_UPDATE, seen.append)
        bus.publish(make_event(EVT_INCIDENT_UPDATE, {"chamado": 1}))
        assert len(seen) == 1

    def test_duplicate_subscribe_and_stats(self):
        bus = EventBus()
        cb = lambda e: None  # noqa: E731
        bus.subscribe(EVT_INCIDENT_UPDATE, cb)
        bus.subscribe(EVT_INCIDENT_UPDATE, cb)
        assert bus.stats() == {EVT_INCIDENT_UPDATE: 1}

    def test_event_envelope(self):
        evt = make_event("transition_sent", {"chamado": 7}, actor="ui", cid="abc")
        d = evt.to_dict()
        assert d["type"] == "TRANSITION_SENT"
        assert d["cid"] == "abc" and d["actor"] == "ui"
        assert d["payload"] == {"chamado": 7}
        json.dumps(d)

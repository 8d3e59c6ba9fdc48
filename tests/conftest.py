"""Shared fixtures: an in-memory transport and timer_update payload builders."""
import json
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from chamado_sync.core.command_codec import decode_event, encode_command  # noqa: E402
from chamado_sync.core.config import ClientConfig  # noqa: E402
from chamado_sync.core.escalation_client import EscalationClient  # noqa: E402


def timer_update(chamado: int, running: Optional[int] = None, *, remaining: int = 1200,
                 finished: tuple = (), final: Optional[str] = None,
                 notes: Optional[Dict[int, str]] = None, operador: Optional[str] = None) -> Dict[str, Any]:
    """Build a server push; levels in `finished` are finished, `running` is running."""
    msg: Dict[str, Any] = {"type": "timer_update", "chamado": chamado}
    for n in range(1, 6):
        if n == running:
            status, rem = "running", remaining
        elif n in finished:
            status, rem = "finished", 0
        else:
            status, rem = "idle", 0
        msg[f"level{n}_status"] = status
        msg[f"level{n}_remaining"] = rem
        msg[f"level{n}_observacao"] = (notes or {}).get(n, "")
    if operador is not None:
        msg["operador"] = operador
    if final is not None:
        msg["statusFinal"] = final
    return msg


class FakeTransport:
    """Stands in for IncidentFeedThread: records sends, lets tests push events."""

    def __init__(self, connected: bool = True, fail_after: Optional[int] = None) -> None:
        self.is_connected = connected
        self.fail_after = fail_after
        self.sent: List[Dict[str, Any]] = []
        self._subs = []
        self._conn_subs = []
        self.connected_calls = 0
        self.closed = False

    def subscribe(self, cb) -> None:
        self._subs.append(cb)

    def on_connectivity(self, cb) -> None:
        self._conn_subs.append(cb)

    def connect(self) -> None:
        self.connected_calls += 1

    def close(self) -> None:
        self.closed = True
        self.set_connected(False)

    def set_connected(self, flag: bool) -> None:
        if self.is_connected == flag:
            return
        self.is_connected = flag
        for cb in list(self._conn_subs):
            cb(flag)

    def send(self, cmd) -> bool:
        if not self.is_connected:
            return False
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            return False
        self.sent.append(json.loads(encode_command(cmd)))
        return True

    def push(self, payload: Dict[str, Any]) -> None:
        state = decode_event(json.dumps(payload))
        if state is None:
            return
        for cb in list(self._subs):
            cb(state)

    def actions(self) -> List[str]:
        return [m["action"] for m in self.sent]


class FakeWebSocketApp:
    """
    Minimal WebSocketApp double for IncidentFeedThread.

    run_forever() opens (or fails) according to the shared script and then
    blocks until close() is called by the test or by the session.
    """

    instances: List["FakeWebSocketApp"] = []
    script: List[str] = []
    lock = threading.Lock()

    def __init__(self, url, on_open=None, on_message=None, on_error=None, on_close=None, on_pong=None):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.on_pong = on_pong
        self.sent: List[str] = []
        self.closed = threading.Event()
        self.run_kwargs: Dict[str, Any] = {}
        with FakeWebSocketApp.lock:
            FakeWebSocketApp.instances.append(self)
            self.mode = FakeWebSocketApp.script.pop(0) if FakeWebSocketApp.script else "open"

    def run_forever(self, **kwargs):
        self.run_kwargs = kwargs
        if self.mode == "refuse":
            self.on_error(self, ConnectionRefusedError("refused"))
            self.on_close(self, None, None)
            return
        self.on_open(self)
        self.closed.wait(5.0)
        self.on_close(self, 1000, "bye")

    def send(self, data):
        self.sent.append(data)

    def close(self):
        self.closed.set()

    def deliver(self, payload) -> None:
        raw = payload if isinstance(payload, (str, bytes)) else json.dumps(payload)
        self.on_message(self, raw)


@pytest.fixture
def fake_ws_app():
    FakeWebSocketApp.instances = []
    FakeWebSocketApp.script = []
    yield FakeWebSocketApp
    for app in list(FakeWebSocketApp.instances):
        app.close()


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(url="wss://escalation.test/ws", reconnect_delay_s=0.05, confirm_delay_s=0)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def client(config, transport):
    c = EscalationClient(config, transport=transport)
    yield c
    c.close()

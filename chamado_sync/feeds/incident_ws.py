# chamado_sync/feeds/incident_ws.py
import ssl
import threading
import time
from typing import Callable, List, Optional

import logging
import websocket

from chamado_sync.core.command_codec import Command, decode_event, encode_command
from chamado_sync.core.event_bus import EVT_CONNECTIVITY, EventBus, make_event
from chamado_sync.core.heartbeats import Heartbeats
from chamado_sync.core.types_runtime import IncidentState

log = logging.getLogger(__name__)
_LOG_THROTTLE = {}

def _log_throttled(key: str, level: str, msg: str, *, interval_s: float = 60.0, exc_info: bool = False):
    now = time.time()
    last = _LOG_THROTTLE.get(key, 0.0)
    if now - last < interval_s:
        return
    _LOG_THROTTLE[key] = now
    fn = getattr(log, level, log.warning)
    fn(msg, exc_info=exc_info)


RECONNECT_DELAY_S = 3.0

EventCallback = Callable[[IncidentState], None]
ConnectivityCallback = Callable[[bool], None]


class IncidentFeedThread(threading.Thread):
    """
    Duplex session with the escalation service (one logical connection).

    - connect() starts the thread; the thread keeps one WebSocketApp alive.
    - When the socket closes or fails, the session is marked disconnected and
      exactly one reconnect is scheduled after a fixed delay. Every failed
      attempt schedules the next one: constant backoff, no jitter, no cap.
    - close() cancels the pending reconnect and closes the socket; commands
      not yet sent are dropped.
    - send() never queues: it returns False while disconnected.

    Callback signatures:
        on_event(state: IncidentState) -> None
        on_connectivity(connected: bool) -> None
    """
    def __init__(
        self,
        url: str,
        *,
        reconnect_delay_s: float = RECONNECT_DELAY_S,
        ping_interval_s: float = 30.0,
        ping_timeout_s: float = 10.0,
        trace: bool = False,
        insecure_ssl: bool = False,
        bus: Optional[EventBus] = None,
        heartbeats: Optional[Heartbeats] = None,
        app_factory: Optional[Callable[..., object]] = None,
    ):
        super().__init__(daemon=True, name="incident-ws")
        self._url = str(url)
        self._reconnect_delay_s = max(0.0, float(reconnect_delay_s))
        self._ping_interval_s = float(ping_interval_s)
        self._ping_timeout_s = float(ping_timeout_s)
        if self._ping_interval_s and self._ping_interval_s <= self._ping_timeout_s:
            # websocket-client rejects interval <= timeout
            self._ping_interval_s = self._ping_timeout_s + 1.0
        self._trace = trace
        self._sslopt = {"cert_reqs": ssl.CERT_NONE} if insecure_ssl else None
        self._bus = bus
        self.heartbeats = heartbeats or Heartbeats()
        self._app_factory = app_factory or websocket.WebSocketApp

        self._stop_evt = threading.Event()
        self._ws_lock = threading.Lock()
        self._ws: Optional[object] = None
        self._connected = False
        self._launched = False

        self._subs: List[EventCallback] = []
        self._conn_subs: List[ConnectivityCallback] = []
        self._subs_lock = threading.RLock()

        self.connect_attempts = 0
        self.reconnects = 0
        self.messages_in = 0
        self.messages_dropped = 0
        self.commands_sent = 0
        self.send_failures = 0

    # --- subscriptions ---

    def subscribe(self, cb: EventCallback) -> None:
        with self._subs_lock:
            if cb not in self._subs:
                self._subs.append(cb)

    def on_connectivity(self, cb: ConnectivityCallback) -> None:
        with self._subs_lock:
            if cb not in self._conn_subs:
                self._conn_subs.append(cb)

    # --- lifecycle ---

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def closed(self) -> bool:
        return self._stop_evt.is_set()

    def connect(self) -> None:
        """Start the session thread (idempotent)."""
        if self._launched or self._stop_evt.is_set():
            return
        self._launched = True
        self.start()

    def close(self, timeout: Optional[float] = None) -> None:
        self._stop_evt.set()
        with self._ws_lock:
            ws = self._ws
        if ws is not None:
            try:
                ws.close()
            except Exception:
                _log_throttled(
                    "incident_ws.stop",
                    "debug",
                    "IncidentWS: ws.close() failed during stop",
                    interval_s=120.0,
                    exc_info=True,
                )
        self._set_connected(False)
        if timeout is not None and self._launched and self is not threading.current_thread():
            self.join(timeout)

    def run(self):
        if self._trace:
            websocket.enableTrace(True)

        while not self._stop_evt.is_set():
            self.connect_attempts += 1
            try:
                ws = self._app_factory(
                    self._url,
                    on_open=self._on_open,
                    on_message=self._on_message,
                    on_error=self._on_error,
                    on_close=self._on_close,
                    on_pong=self._on_pong,
                )
                with self._ws_lock:
                    self._ws = ws
                if self._stop_evt.is_set():
                    break
                ws.run_forever(
                    ping_interval=self._ping_interval_s,
                    ping_timeout=self._ping_timeout_s if self._ping_interval_s else None,
                    sslopt=self._sslopt or {},
                    reconnect=0,
                )
            except Exception as e:
                _log_throttled("incident_ws.loop", "warning", f"[IncidentWS] connection failed: {e!r}", interval_s=15.0)
            finally:
                with self._ws_lock:
                    self._ws = None

            self._set_connected(False)
            if self._stop_evt.is_set():
                break
            self.reconnects += 1
            log.info("[IncidentWS] reconnecting in %.1fs (attempt %d)", self._reconnect_delay_s, self.reconnects)
            # wait() returns early when close() is called
            self._stop_evt.wait(self._reconnect_delay_s)

        self._set_connected(False)
        log.info("[IncidentWS] session closed")

    # --- outbound ---

    def send(self, cmd: Command) -> bool:
        """Transmit one command; False when not connected. Never queues."""
        if not self._connected or self._stop_evt.is_set():
            self.send_failures += 1
            log.debug("[IncidentWS] %s for chamado=%s not sent: offline", cmd.action, cmd.chamado)
            return False
        with self._ws_lock:
            ws = self._ws
        if ws is None:
            self.send_failures += 1
            return False
        try:
            ws.send(encode_command(cmd))
        except (websocket.WebSocketException, OSError) as e:
            self.send_failures += 1
            _log_throttled("incident_ws.send", "warning", f"[IncidentWS] send failed: {e!r}", interval_s=15.0)
            return False
        self.commands_sent += 1
        return True

    def stats(self) -> dict:
        return {
            "connected": self._connected,
            "connect_attempts": self.connect_attempts,
            "reconnects": self.reconnects,
            "messages_in": self.messages_in,
            "messages_dropped": self.messages_dropped,
            "commands_sent": self.commands_sent,
            "send_failures": self.send_failures,
        }

    # --- connectivity flag ---

    def _set_connected(self, flag: bool) -> None:
        with self._subs_lock:
            if self._connected == flag:
                return
            self._connected = flag
            callbacks = list(self._conn_subs)

        if flag:
            log.info("[IncidentWS] connected to %s", self._url)
        else:
            log.warning("[IncidentWS] disconnected")

        for cb in callbacks:
            try:
                cb(flag)
            except Exception:
                log.exception("connectivity callback failed")
        if self._bus is not None:
            self._bus.publish(make_event(EVT_CONNECTIVITY, {"connected": flag}, actor="transport"))

    # --- WS callbacks ---

    def _on_open(self, _ws):
        self.heartbeats.beat("ws_open")
        if self._stop_evt.is_set():
            return
        self._set_connected(True)

    def _on_pong(self, _ws, _data):
        self.heartbeats.beat("ws_pong")

    def _on_close(self, _ws, *args):
        _log_throttled("incident_ws.close", "warning", f"[IncidentWS] closed {args!r}", interval_s=15.0)
        self._set_connected(False)

    def _on_error(self, _ws, err):
        _log_throttled(
            "incident_ws.err",
            "warning",
            f"[IncidentWS] error: {repr(err)}",
            interval_s=15.0,
        )
        self._set_connected(False)

    def _on_message(self, _ws, message):
        self.messages_in += 1
        self.heartbeats.beat("ws_message")

        state = decode_event(message)
        if state is None:
            self.messages_dropped += 1
            _log_throttled(
                "incident_ws.drop",
                "debug",
                "IncidentWS: unrecognized message dropped",
                interval_s=60.0,
            )
            return

        with self._subs_lock:
            callbacks = list(self._subs)
        for cb in callbacks:
            try:
                cb(state)
            except Exception:
                log.exception("event subscriber failed for chamado=%s", state.incident_id)

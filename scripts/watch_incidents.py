# -*- coding: utf-8 -*-
"""
scripts/watch_incidents.py

Headless console client for the escalation service.

Connects, registers the watch set, prints one line per incident every
--interval seconds and, optionally, performs one user action first:

  python -m scripts.watch_incidents --url wss://... --watch 123456,123457
  python -m scripts.watch_incidents --watch 123456 --action escalate --chamado 123456 \
      --note "Gestor acionado por telefone"

The URL can also come from CHAMADO_WS_URL (a .env file in the project root
is loaded first).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List

# --- project root discovery ---
ROOT_DIR = Path(__file__).resolve().parent.parent

# Ensure project root is importable when run as: python scripts/xxx.py
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from chamado_sync.core.config import ClientConfig
from chamado_sync.core.escalation_client import EscalationClient, IncidentView, TransitionResult
from chamado_sync.core.event_bus import (
    EVT_REGRESSION,
    EVT_TRANSITION_PARTIAL,
    EVT_TRANSITION_REJECTED,
    EVT_TRANSITION_SENT,
    Event,
)
from chamado_sync.tools.load_env import load_env

ACTIONS = ("start", "escalate", "back", "resolve", "notes")
EVENT_TYPES = (EVT_TRANSITION_SENT, EVT_TRANSITION_REJECTED, EVT_TRANSITION_PARTIAL, EVT_REGRESSION)


def _parse_ids(raw: str) -> List[int]:
    out: List[int] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part.isdigit() and int(part) > 0:
            out.append(int(part))
    return out


def build_args(argv: List[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Watch escalation timers of one or more chamados")
    p.add_argument("--url", default=None, help="WebSocket endpoint (default: CHAMADO_WS_URL)")
    p.add_argument("--env", default=str(ROOT_DIR / ".env"), help="dotenv file to load first")
    p.add_argument("--watch", default="", help="Comma-separated chamado ids, e.g. 123456,123457")
    p.add_argument("--interval", type=float, default=1.0, help="Render interval seconds")
    p.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = run until Ctrl+C)")
    p.add_argument("--action", choices=ACTIONS, default=None, help="Optional action to perform once connected")
    p.add_argument("--chamado", type=int, default=0, help="Target chamado for --action")
    p.add_argument("--note", default="", help="Annotation for escalate/back/resolve/notes")
    p.add_argument("--operator", default="", help="Operator name for --action notes")
    p.add_argument("--connect-timeout", type=float, default=10.0, help="Seconds to wait for the first connection")
    p.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--events", action="store_true", help="Print transition and regression events as JSON lines")
    return p.parse_args(argv)


def _render(view: IncidentView) -> str:
    if view.finalized:
        status = "FINALIZED"
    elif view.running_level is not None:
        status = f"L{view.running_level} {view.display} ({view.urgency})"
    else:
        status = "idle" + (" [start available]" if view.can_start else "")
    operator = f" operator={view.operator}" if view.operator else ""
    pending = f" pending={view.pending}" if view.pending else ""
    return f"#{view.incident_id}: {status}{operator}{pending}"


def _event_line(event: Event) -> str:
    return json.dumps(event.to_dict(), ensure_ascii=False, sort_keys=True)


def _run_action(client: EscalationClient, args: argparse.Namespace) -> TransitionResult:
    n = int(args.chamado)
    if args.action == "start":
        return client.start(n)
    if args.action == "escalate":
        return client.escalate(n, args.note)
    if args.action == "back":
        return client.step_back(n, args.note)
    if args.action == "resolve":
        return client.resolve_now(n, args.note)
    return client.save_notes(n, annotation=args.note, operator=args.operator)


def _wait_connected(client: EscalationClient, timeout: float) -> bool:
    deadline = time.time() + max(0.0, timeout)
    while time.time() < deadline:
        if client.is_connected:
            return True
        time.sleep(0.1)
    return client.is_connected


def main(argv: List[str] | None = None) -> int:
    args = build_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    load_env(args.env)

    try:
        cfg = ClientConfig.from_env(url=args.url)
    except ValueError as e:
        print("config error:", e)
        return 2

    ids = _parse_ids(args.watch)
    if args.action and args.chamado <= 0:
        print("--action requires --chamado")
        return 2
    if args.action and args.chamado not in ids:
        ids.append(args.chamado)

    client = EscalationClient(cfg)
    client.connect()
    if not _wait_connected(client, args.connect_timeout):
        print(f"not connected after {args.connect_timeout:.0f}s; still retrying every {cfg.reconnect_delay_s:.0f}s")

    # re-assert the watch set on every reconnect
    client.on_connectivity(lambda up: up and client.resync())
    if args.events:
        for evt_type in EVENT_TYPES:
            client.bus.subscribe(evt_type, lambda e: print(_event_line(e)))
    client.watch(ids)

    rc = 0
    if args.action:
        # give the server a moment to push the current state before deciding
        time.sleep(min(2.0, args.interval))
        res = _run_action(client, args)
        if res.ok:
            print(f"{res.kind} sent for #{res.incident_id} ({res.sent} command(s))")
        else:
            print(f"{res.kind} refused for #{res.incident_id}: {res.message}")
            rc = 1

    started = time.time()
    try:
        while True:
            for n in ids:
                print(_render(client.describe(n)))
            if not client.is_connected:
                print("-- offline --")
            if args.duration and time.time() - started >= args.duration:
                break
            time.sleep(max(0.1, args.interval))
    except KeyboardInterrupt:
        pass
    finally:
        client.close()
    return rc


if __name__ == "__main__":
    raise SystemExit(main())

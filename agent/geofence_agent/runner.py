"""
Entry point, CLI sub-commands and auto-restart wrapper.

    run            start tracking + delivery (default)
    login/logout   queue a manual check-in/out at --lat/--lon and try to send it
    status         outbox counts
    dead-letters   list rejected events kept for review
    retry ID       put a dead-lettered event back in the queue
    check          which zones contain --lat/--lon, with distances
    configure      write config.json (server, token, user)
"""

import argparse
import json
import sys
import time
from pathlib import Path

from .constants import AGENT_VERSION
from .config import (
    log, safe_print, setup_logging, load_config, save_config, require_keys, OUTBOX_FILE,
)
from .geo import distance_from_center, zones_containing
from .exceptions import FetchError, ValidationError
from .models import AttendanceEvent, Coordinate, EventType
from .outbox import EventOutbox
from .delivery import DeliveryWorker
from .policy import LocalBackend
from .zones import ZoneRegistry
from . import api
from . import http_client


def _build_parser():
    parser = argparse.ArgumentParser(prog="geofence-agent",
                                     description="Geofence attendance agent v" + AGENT_VERSION)
    parser.add_argument("--config", help="path to config.json")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="track location and deliver events")
    run.add_argument("--feed", help="JSON-lines sample feed to tail")
    run.add_argument("--local-zones", help="zones JSON file; validate locally instead of calling the server")

    for name in ("login", "logout"):
        p = sub.add_parser(name, help=f"manual {name}")
        p.add_argument("--lat", type=float, required=True)
        p.add_argument("--lon", type=float, required=True)
        p.add_argument("--accuracy", type=float)
        p.add_argument("--notes")

    sub.add_parser("status", help="show outbox counts")
    sub.add_parser("dead-letters", help="list rejected events")
    retry = sub.add_parser("retry", help="re-queue a dead-lettered event")
    retry.add_argument("local_id")

    check = sub.add_parser("check", help="list the zones containing a location")
    check.add_argument("--lat", type=float, required=True)
    check.add_argument("--lon", type=float, required=True)

    conf = sub.add_parser("configure", help="write config.json")
    conf.add_argument("--server", required=True)
    conf.add_argument("--token")
    conf.add_argument("--user", required=True)
    conf.add_argument("--dwell", type=int)
    return parser


def _load_local_backend(path, config):
    zones = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(zones, dict):
        zones = zones.get("regions", [])
    return LocalBackend(zones, user_id=config.get("userId", "local-user"))


def _submitter(config):
    return lambda event: api.submit_attendance_event(config, event)


# ─── Sub-commands ────────────────────────────────────────────────

def _cmd_run(config, args):
    from .app import AgentApp

    backend = None
    if args.local_zones:
        backend = _load_local_backend(args.local_zones, config)
        log.info("Local validation mode: %d zones from %s",
                 len(backend.fetch_active_zones()), args.local_zones)
    else:
        require_keys(config, "serverUrl", "userId")

    app = AgentApp(config, backend=backend, feed_path=args.feed)
    app.run()
    return 0


def _cmd_manual(config, args, kind):
    require_keys(config, "serverUrl")
    outbox = EventOutbox(OUTBOX_FILE)
    location = Coordinate.from_dict(
        {"latitude": args.lat, "longitude": args.lon, "accuracy": args.accuracy}
    )
    event = outbox.enqueue(AttendanceEvent(type=kind, location=location, notes=args.notes))
    report = DeliveryWorker(outbox, _submitter(config)).run_once()
    if any(e.local_id == event.local_id for e in outbox.entries()):
        safe_print(f"{kind.value} queued ({event.local_id[:8]}) — will be sent when online")
    else:
        safe_print(f"{kind.value} recorded ({event.local_id[:8]})")
    log.info("Manual %s: %d delivered, %d retrying", kind.value, report.delivered, report.retried)
    return 0


def _cmd_status(config, args):
    outbox = EventOutbox(OUTBOX_FILE)
    dead = outbox.dead_letters()
    wakeup = outbox.next_wakeup()
    safe_print(f"Pending events : {outbox.pending_count()}")
    safe_print(f"Dead letters   : {len(dead)}")
    if wakeup:
        safe_print(f"Next attempt in: {max(0, wakeup - time.time()):.0f}s")
    return 0


def _cmd_dead_letters(config, args):
    dead = EventOutbox(OUTBOX_FILE).dead_letters()
    if not dead:
        safe_print("No dead-lettered events.")
    for entry in dead:
        ev = entry.event
        safe_print(f"{ev.local_id}  {ev.type.value:<15} zone={ev.zone_id or '-':<12} "
                   f"attempts={entry.attempt_count}  error={entry.last_error}")
    return 0


def _cmd_retry(config, args):
    outbox = EventOutbox(OUTBOX_FILE)
    if not outbox.requeue_dead(args.local_id):
        safe_print(f"No dead-lettered event {args.local_id}")
        return 1
    if config.get("serverUrl"):
        DeliveryWorker(outbox, _submitter(config)).run_once()
    safe_print(f"Re-queued {args.local_id}")
    return 0


def _cmd_check(config, args):
    require_keys(config, "serverUrl")
    point = Coordinate.from_dict({"latitude": args.lat, "longitude": args.lon})
    zones = ZoneRegistry.ingest(api.fetch_active_zones(config))
    inside = zones_containing(point, zones)
    if not inside:
        safe_print(f"Not inside any of {len(zones)} zones.")
    for zone in inside:
        safe_print(f"{zone.zone_id:<12} {zone.name:<30} "
                   f"{distance_from_center(point, zone):7.1f}m / {zone.radius:.0f}m")
    return 0


def _cmd_configure(config, args):
    config = dict(config)
    config.update(serverUrl=args.server.rstrip("/"), userId=args.user)
    if args.token:
        config["authToken"] = args.token
    if args.dwell:
        config["dwellSamples"] = args.dwell
    save_config(config, args.config)
    safe_print(f"Configured for {args.user} @ {config['serverUrl']}")
    return 0


def main(argv=None):
    """Primary agent entry point. Returns a process exit code."""
    args = _build_parser().parse_args(argv)
    setup_logging()
    command = args.command or "run"
    if command == "run" and not hasattr(args, "feed"):
        args.feed = None
        args.local_zones = None

    config = load_config(args.config) or {}
    if command == "configure":
        return _cmd_configure(config, args)
    if not config and not (command == "run" and args.local_zones):
        safe_print("No configuration found. Create config.json with serverUrl, authToken and userId.")
        return 1
    if config.get("serverUrl"):
        log.info("Loaded config for user %s (%s)", config.get("userId", "?"), config["serverUrl"])

    try:
        if command == "run":
            return _cmd_run(config, args)
        if command in ("login", "logout"):
            return _cmd_manual(config, args, EventType(command))
        if command == "status":
            return _cmd_status(config, args)
        if command == "dead-letters":
            return _cmd_dead_letters(config, args)
        if command == "retry":
            return _cmd_retry(config, args)
        if command == "check":
            return _cmd_check(config, args)
    except FetchError as e:
        safe_print(f"Could not reach the server: {e}")
        log.error("%s failed: %s", command, e)
        return 3
    except (ValidationError, ValueError) as e:
        safe_print(f"Error: {e}")
        log.error("%s failed: %s", command, e)
        return 2
    return 1


def run_with_auto_restart(argv=None):
    """
    Wrapper that auto-restarts on crash. Never gives up.
    Crash counter resets if the agent ran for 2+ minutes (not a boot-loop).
    """
    crash_count = 0
    crash_window = 120
    max_rapid_crashes = 10

    while True:
        start_time = time.time()
        try:
            return main(argv)
        except KeyboardInterrupt:
            safe_print("\nAgent stopped by user.")
            return 0
        except SystemExit as e:
            if e.code in (0, None):
                return 0
            log.error("Agent SystemExit: %s", e)
            return e.code if isinstance(e.code, int) else 1
        except Exception as e:
            elapsed = time.time() - start_time
            log.error("Agent crashed after %.0fs: %s", elapsed, e, exc_info=True)

            if elapsed > crash_window:
                crash_count = 0
            crash_count += 1

            if crash_count >= max_rapid_crashes:
                wait = 120
                log.warning("Many rapid crashes (%d). Waiting %ds...", crash_count, wait)
            else:
                wait = min(10 * crash_count, 60)

            log.info("Restarting in %ds (crash %d)...", wait, crash_count)
            time.sleep(wait)

            http_client.http = http_client.reset_session(http_client.http)


if __name__ == "__main__":
    sys.exit(run_with_auto_restart())

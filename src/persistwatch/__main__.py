# Main Entry Point - Command Line
#
# persistwatch serve       run the local control API
# persistwatch status      query a running API server
# persistwatch scan        full scan with a risk table
# persistwatch monitor     foreground monitoring until Ctrl+C
# persistwatch history     recent persistence changes
# persistwatch contain / release / extend   containment of one item
# persistwatch rollback    remove every network rule this tool applied
# persistwatch preset      apply a monitor preset and save it

import argparse
import json
import logging
import os
import sys
import threading
from typing import List, Optional

import httpx

from . import __version__
from .core import EventSeverity, EventType, get_audit_logger
from .core.config import MonitorConfiguration, MonitorPreset
from .core.exceptions import ScanFailedError
from .core.models import PersistenceCategory, PersistenceItem
from .core.preferences import Preferences

logger = logging.getLogger("persistwatch")

DEFAULT_API_URL = "http://127.0.0.1:8000"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


def _load_config() -> MonitorConfiguration:
    return MonitorConfiguration.load(Preferences())


def _resolve_item(service, category_value: str, identifier: str) -> Optional[PersistenceItem]:
    """Baseline first, then a fresh scan, then containment state."""
    from .guardian.baseline import MonitorBaseline
    from .guardian.monitor_database import MonitorDatabase
    from .guardian.scanner import FilesystemScanner

    category = PersistenceCategory(category_value)
    item = MonitorBaseline(MonitorDatabase()).find(identifier, category)
    if item is not None:
        return item
    try:
        for scanned in FilesystemScanner().scan(category):
            if scanned.identifier == identifier:
                return scanned
    except ScanFailedError as exc:
        logger.warning("Scan failed: %s", exc)
    return service.item_for_state(identifier)


def _containment_service():
    """Shared service after expired rules are purged and live ones re-armed.

    Expiry timers do not outlive a CLI process, so every command that
    touches containment state restores first.
    """
    from .containment.containment_service import get_containment_service

    service = get_containment_service()
    restored = service.restore()
    logger.debug("Containment restore: %s", restored)
    return service


def _print_result(result) -> int:
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.ok else 1


# ── Commands ─────────────────────────────────────────────────────────

def cmd_serve(args) -> int:
    from .api.main import start_api_server

    print(f"Starting PersistWatch API on {args.host}:{args.port} (Ctrl+C to stop)")
    start_api_server(host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def cmd_status(args) -> int:
    base = args.api.rstrip("/")
    try:
        health = httpx.get(f"{base}/api/health", timeout=5)
        health.raise_for_status()
        monitor = httpx.get(f"{base}/api/monitor/status", timeout=5)
        monitor.raise_for_status()
        containments = httpx.get(f"{base}/api/containment", timeout=5)
        containments.raise_for_status()
    except httpx.HTTPError as exc:
        print(f"API not reachable at {base}: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({
            "health": health.json(),
            "monitor": monitor.json(),
            "containments": containments.json(),
        }, indent=2))
        return 0

    status = monitor.json()
    print(f"PersistWatch v{health.json().get('version')} at {base}")
    print(f"  Monitor:      {status['status']}")
    print(f"  Changes:      {status['change_count']} ({status['unacknowledged_count']} unacknowledged)")
    print(f"  Contained:    {containments.json()['count']} items")
    return 0


def cmd_scan(args) -> int:
    from .guardian.scanner import FilesystemScanner, NullTrustVerifier, verify_all
    from .intel.risk_scorer import RiskScorer

    scanner = FilesystemScanner()
    try:
        if args.category:
            items = scanner.scan(PersistenceCategory(args.category))
        else:
            items = scanner.scan_all()
    except ScanFailedError as exc:
        print(f"Scan failed: {exc}", file=sys.stderr)
        return 1

    scorer = RiskScorer()
    rows = []
    for item in verify_all(NullTrustVerifier(), items):
        assessment = scorer.assess(item)
        rows.append((assessment, item))
    rows.sort(key=lambda r: r[0].score, reverse=True)

    if args.json:
        print(json.dumps(
            [dict(item.to_dict(), risk=a.to_dict()) for a, item in rows], indent=2, default=str
        ))
        return 0

    print(f"{'SCORE':>5}  {'SEVERITY':<9} {'CATEGORY':<22} IDENTIFIER")
    for assessment, item in rows:
        print(f"{assessment.score:>5}  {assessment.severity.value:<9} "
              f"{item.category.value:<22} {item.identifier}")
    print(f"\n{len(rows)} items")
    return 0


def cmd_monitor(args) -> int:
    from .guardian.monitor_database import MonitorDatabase
    from .guardian.notifications import NotificationDispatcher
    from .guardian.persistence_monitor import PersistenceMonitor
    from .guardian.scanner import FilesystemScanner

    config = _load_config()
    notifier = NotificationDispatcher(config)
    notifier.subscribe(lambda n: print(f"[{n.relevance:>3}] {n.title}: {n.body}"))
    monitor = PersistenceMonitor(
        scanner=FilesystemScanner(),
        config=config,
        database=MonitorDatabase(),
        notifier=notifier,
    )
    if not monitor.start_monitoring():
        print(f"Monitor failed to start: {monitor.status_description}", file=sys.stderr)
        return 1

    print(f"{monitor.status_description} (Ctrl+C to stop)")
    stop = threading.Event()
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        print()
    finally:
        monitor.shutdown()
    print(f"Stopped. {monitor.change_count} changes notified, {monitor.scan_count} rescans.")
    return 0


def cmd_history(args) -> int:
    from .guardian.monitor_database import MonitorDatabase

    entries = MonitorDatabase().get_change_history(args.limit)
    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return 0
    for e in entries:
        ack = " " if e.acknowledged else "*"
        print(f"{ack} {e.timestamp:%Y-%m-%d %H:%M:%S} {e.relevance_score:>3} "
              f"{e.change_type.value:<9} {e.category.value:<22} {e.item_name}")
    return 0


def cmd_contain(args) -> int:
    service = _containment_service()
    item = _resolve_item(service, args.category, args.identifier)
    if item is None:
        print(f"Item not found: {args.identifier}", file=sys.stderr)
        return 1
    if args.mode == "persistence":
        return _print_result(service.disable_persistence_only(item))
    if args.mode == "network":
        return _print_result(service.block_network_only(item, args.timeout))
    return _print_result(service.contain(item, args.timeout))


def cmd_release(args) -> int:
    service = _containment_service()
    item = _resolve_item(service, args.category, args.identifier)
    if item is None:
        print(f"Item not found: {args.identifier}", file=sys.stderr)
        return 1
    return _print_result(service.release(item))


def cmd_extend(args) -> int:
    service = _containment_service()
    item = _resolve_item(service, args.category, args.identifier)
    if item is None:
        print(f"Item not found: {args.identifier}", file=sys.stderr)
        return 1
    return _print_result(service.extend_timeout(item, args.additional))


def cmd_rollback(args) -> int:
    removed = _containment_service().emergency_rollback()
    print(f"Removed {removed} network rules")
    return 0


def cmd_preset(args) -> int:
    prefs = Preferences()
    config = MonitorConfiguration.load(prefs)
    config.apply_preset(MonitorPreset(args.name))
    config.save(prefs)
    print(json.dumps(config.to_dict(), indent=2))
    return 0


# ── Parser ───────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    categories = [c.value for c in PersistenceCategory]

    parser = argparse.ArgumentParser(
        prog="persistwatch",
        description="PersistWatch - persistence monitoring and safe containment",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("PERSISTWATCH_LOG_LEVEL", "INFO"),
        help="Logging level (default: PERSISTWATCH_LOG_LEVEL or INFO)",
    )
    parser.add_argument("--version", action="version", version=f"PersistWatch v{__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the local control API")
    p.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("status", help="Query a running API server")
    p.add_argument("--api", default=os.environ.get("PERSISTWATCH_API_URL", DEFAULT_API_URL),
                   help=f"API base URL (default: PERSISTWATCH_API_URL or {DEFAULT_API_URL})")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("scan", help="Full scan with risk scores")
    p.add_argument("--category", choices=categories)
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser("monitor", help="Monitor in the foreground until Ctrl+C")
    p.set_defaults(func=cmd_monitor)

    p = sub.add_parser("history", help="Recent persistence changes")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_history)

    for name, func, help_text in (
        ("contain", cmd_contain, "Contain an item"),
        ("release", cmd_release, "Release a contained item"),
        ("extend", cmd_extend, "Extend an item's containment"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("category", choices=categories)
        p.add_argument("identifier")
        p.set_defaults(func=func)
        if name == "contain":
            p.add_argument("--timeout", type=float, help="Seconds until automatic release")
            p.add_argument("--mode", choices=["all", "persistence", "network"], default="all")
        elif name == "extend":
            p.add_argument("--additional", type=float, help="Seconds to add (default: 24h)")

    p = sub.add_parser("rollback", help="Remove every network rule this tool applied")
    p.set_defaults(func=cmd_rollback)

    p = sub.add_parser("preset", help="Apply a monitor preset")
    p.add_argument("name", choices=[m.value for m in MonitorPreset])
    p.set_defaults(func=cmd_preset)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)

    get_audit_logger().log_event(
        event_type=EventType.SYSTEM_START,
        severity=EventSeverity.INFO,
        message=f"PersistWatch {args.command}",
        details={"version": __version__, "command": args.command},
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())

# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: main launcher for portsage: loads the knowledge base, starts the port scanner and the
learning worker in background threads, optionally serves the JSON dashboard, and prints a line
whenever a new process gets a label. Ctrl+C stops everything and saves the knowledge base.

modes
- default: scan forever at --interval seconds
- --once: scan a single time, print what is listening and exit
- --list: print everything the knowledge base knows and exit
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import argparse  # for parsing command line arguments
import logging  # for log levels and silencing waitress
import sys  # for stderr and the exit code
import threading  # for running the scanner and dashboard in background threads
import time  # for the cleanup and save timers

from colorama import Fore, Style, just_fix_windows_console
from dotenv import load_dotenv

from agent.context_gatherer import enrich_context  # fills in cmdline, app bundle and docker info
from agent.port_scan import PortScanner  # finds listening processes
from algorithm.ica_client import IcaClient, ServiceKeyCache  # remote classifier
from dashboard.app import run_dashboard  # JSON API
from dashboard.config import Config, load_config
from knowledge.service import KnowledgeService
from knowledge.storage import KnowledgeBaseError, load_knowledge_base
from knowledge.types import KnowledgeEntry

SAVE_INTERVAL_SECS = 30.0  # how often the main loop writes pending sighting counts to disk
WORKER_STOP_TIMEOUT_SECS = 2.0  # a request mid-flight is retried on the next run
ONCE_WORKER_TIMEOUT_SECS = 30.0  # --once waits this long for analyses; the rest stay pending

CYAN = Fore.CYAN
MAG = Fore.MAGENTA
RED = Fore.RED
DIM = Style.DIM
BOLD = Style.BRIGHT
RESET = Style.RESET_ALL


def _setup_logging(verbosity: int) -> None:
    # errors only by default so the console stays readable, -v for info, -vv for debug
    level = logging.ERROR
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # silence waitress web server log messages so the console stays clean
    logging.getLogger("waitress").setLevel(logging.CRITICAL)
    logging.getLogger("waitress.queue").setLevel(logging.CRITICAL)


def print_banner(cfg: Config, serving: bool) -> None:
    print(f"{DIM}┌──────────────────────────────────────────────┐{RESET}")
    print(f"{DIM}│{RESET}{CYAN}{BOLD}          p  o  r  t  s  a  g  e{RESET}{DIM}              │{RESET}")
    print(f"{DIM}└──────────────────────────────────────────────┘{RESET}")
    print(f"  knowledge: {cfg.knowledge_path}")
    learning = "on" if cfg.learning.enabled else "off (heuristics only)"
    print(f"  learning:  {learning}")
    if serving:
        print(f"  dashboard: http://{cfg.host}:{cfg.port}")
    print(f"  press {CYAN}Ctrl+C{RESET} to quit.\n")


def format_entry(entry: KnowledgeEntry) -> str:
    fp = entry.fingerprint
    where = fp.command if fp.default_port is None else f"{fp.command}:{fp.default_port}"
    return (
        f"{MAG}{entry.display_name}{RESET} {DIM}[{entry.category.value}, "
        f"{entry.source.value}]{RESET} {where}"
    )


def print_entries(entries: list[KnowledgeEntry]) -> None:
    for entry in sorted(entries, key=lambda e: e.display_name.lower()):
        print(format_entry(entry))
    print(f"\n{len(entries)} known processes")


def _report_learned(learned: list[KnowledgeEntry]) -> None:
    for entry in learned:
        print(f"{MAG}⬩{RESET}{CYAN}➢ {RESET} learned {format_entry(entry)}")


def run_once(service: KnowledgeService, scanner: PortScanner) -> int:
    if service.config.enabled:
        service.start_worker()  # promoted sightings are analysed before we exit
    sightings = scanner.scan()
    for s in sorted(sightings, key=lambda s: s.context.port or 0):
        service.observe_sighting(s)
        label = service.lookup_display_name(s.fingerprint) or f"{DIM}unknown{RESET}"
        print(f"{s.context.port:>5}  {s.fingerprint.command:<24} {label}")

    service.stop_worker(timeout=ONCE_WORKER_TIMEOUT_SECS)
    _report_learned(service.drain_results())
    try:
        service.save()
    except KnowledgeBaseError as exc:
        print(f"{RED}error:{RESET} {exc}", file=sys.stderr)
        return 1
    return 0


def run_loop(service: KnowledgeService, cfg: Config, stop: threading.Event) -> None:
    last_cleanup = last_save = time.monotonic()
    while not stop.is_set():
        learned = service.drain_results(timeout=1.0)  # doubles as the loop's tick
        _report_learned(learned)

        now = time.monotonic()
        if now - last_cleanup >= cfg.cleanup_interval_sec:
            service.cleanup()
            last_cleanup = now
        if learned or now - last_save >= SAVE_INTERVAL_SECS:
            try:
                service.save()
            except KnowledgeBaseError as exc:
                logging.getLogger(__name__).error("%s", exc)  # keep running, retry next round
            last_save = now


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portsage", description="Label the processes listening on your dev machine."
    )
    parser.add_argument("--once", action="store_true", help="scan once, print and exit")
    parser.add_argument("--list", action="store_true", help="print the knowledge base and exit")
    parser.add_argument(
        "--interval", type=float, default=None, help="seconds between scans (default from config)"
    )
    parser.add_argument("--serve", action="store_true", help="serve the JSON dashboard")
    parser.add_argument("--no-banner", action="store_true", help="do not print the banner")
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="more logging (-vv for debug)"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()  # load .env file if it exists, before reading PORTSAGE_* settings
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    just_fix_windows_console()  # enable ANSI color codes on Windows terminals

    cfg = load_config()
    try:
        kb = load_knowledge_base(cfg.knowledge_path)
    except KnowledgeBaseError as exc:
        print(f"{RED}error:{RESET} {exc}", file=sys.stderr)
        return 1

    if args.list:
        print_entries(list(kb.entries.values()))
        return 0

    # one key cache for the whole process, setec is asked at most once
    keys = ServiceKeyCache.for_config(cfg.learning)
    client = IcaClient(cfg.learning, key_cache=keys)
    service = KnowledgeService(
        kb, cfg.learning, path=cfg.knowledge_path, client=client, enrich=enrich_context
    )
    interval = args.interval if args.interval is not None else cfg.scan_interval_sec
    scanner = PortScanner(interval_sec=interval, docker=cfg.docker)

    if args.once:
        return run_once(service, scanner)

    if not args.no_banner:
        print_banner(cfg, args.serve)

    if cfg.learning.enabled:
        service.start_worker()

    stop = threading.Event()
    threading.Thread(
        target=scanner.run, args=(service.observe_sighting, stop), name="port-scan", daemon=True
    ).start()
    if args.serve:
        threading.Thread(
            target=run_dashboard,
            kwargs={"service": service, "host": cfg.host, "port": cfg.port},
            name="dashboard",
            daemon=True,
        ).start()

    try:
        run_loop(service, cfg, stop)
    except KeyboardInterrupt:
        print(f"\n{MAG}⬩{RESET}{CYAN}➢ {RESET} Shutting down {MAG}portsage{RESET}...\n")
    finally:
        stop.set()
        service.stop_worker(timeout=WORKER_STOP_TIMEOUT_SECS)
        _report_learned(service.drain_results())

    try:
        service.save()
    except KnowledgeBaseError as exc:
        print(f"{RED}error:{RESET} {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

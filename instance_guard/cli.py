#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
instance_guard/cli.py
=====================

Role
----
Command line front end for the guard. Useful from shell wrappers and to
poke a running primary by hand:

   $ instance-guard --id com.example.viewer
     - first launch: becomes primary and logs every notification until
       SIGINT/SIGTERM (or --duration seconds).
     - later launches: notify the primary and exit with RC_ALREADY_RUNNING.

   $ instance-guard --id com.example.viewer --notify-only
     - never claims; just signals whoever is primary.

Exit codes
----------
RC_OK              = 0  (primary ran and stopped cleanly / notify-only sent)
RC_CLAIM_ERR       = 1  (claim could not be confirmed; see log)
RC_FATAL_ERR       = 2  (settings unreadable)
RC_ALREADY_RUNNING = 3  (secondary; primary was notified)
"""

from __future__ import annotations

import sys
import signal
import argparse
import threading
from typing import List, Optional

from instance_guard import channel
from instance_guard.errors import SettingsError
from instance_guard.instance import Role, SingleInstance
from instance_guard.utils import GuardSettings, load_settings, setup_logger

# -----------------------------------------------------------------------------
# Exit codes
RC_OK = 0
RC_CLAIM_ERR = 1
RC_FATAL_ERR = 2
RC_ALREADY_RUNNING = 3
# -----------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="instance-guard",
                                     description="Single-instance guard")
    parser.add_argument("--id", required=True, dest="identifier",
                        help="Identifier shared by every instance that should coordinate.")
    parser.add_argument("--settings",
                        help="Path to YAML settings (guard:, paths:, logging_levels:).")
    parser.add_argument("--runtime-dir",
                        help="Directory for the lock and socket files (overrides YAML).")
    parser.add_argument("--notify-only", action="store_true",
                        help="Do not claim; only notify the running primary.")
    parser.add_argument("--duration", type=float,
                        help="As primary, stop after this many seconds.")
    parser.add_argument("--log-level",
                        help="Force a log level (e.g. DEBUG), ignoring YAML.")
    parser.add_argument("--log-file",
                        help="Also log to this file (default: console only unless "
                             "paths.logs_dir is set in YAML).")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = {}
    if args.settings:
        try:
            settings = load_settings(args.settings)
        except SettingsError as e:
            print(f"[FATAL] Cannot load settings: {e}", file=sys.stderr)
            return RC_FATAL_ERR

    logs_dir = (settings.get("paths", {}) or {}).get("logs_dir")
    logger = setup_logger(
        "instance_guard",
        settings=settings,
        level_override=args.log_level,
        to_file=bool(args.log_file or logs_dir),
        logfile_path=args.log_file,
    )

    guard_settings = GuardSettings.from_settings(settings, logger)
    if args.runtime_dir:
        guard_settings.runtime_dir = args.runtime_dir

    # --- NOTIFY-ONLY ----------------------------------------------------------
    if args.notify_only:
        sent = channel.signal(args.identifier, guard_settings.resolved_runtime_dir(),
                              timeout=guard_settings.connect_timeout, logger=logger)
        logger.info(f"[{args.identifier}] notification {'sent' if sent else 'not delivered (no primary)'}")
        return RC_OK

    # --- CLAIM ----------------------------------------------------------------
    stop_evt = threading.Event()
    guard = SingleInstance(args.identifier, settings=guard_settings, logger=logger)
    try:
        if guard.role is Role.FAILED:
            return RC_CLAIM_ERR

        if guard.role is Role.SECONDARY:
            guard.notify()
            logger.info(f"[{args.identifier}] primary notified; exiting")
            return RC_ALREADY_RUNNING

        if not guard.listening:
            logger.warning(f"[{args.identifier}] running as primary without notifications")

        def _sig_handler(signum, _frame):
            logger.info(f"Signal {signum} received; stopping…")
            stop_evt.set()

        signal.signal(signal.SIGINT, _sig_handler)
        signal.signal(signal.SIGTERM, _sig_handler)

        print(f"PRIMARY {args.identifier}", flush=True)
        stop_evt.wait(timeout=args.duration)
        logger.info(f"[{args.identifier}] stopping after {guard.notification_count} notification(s)")
        return RC_OK
    finally:
        guard.close()


if __name__ == "__main__":
    raise SystemExit(main())

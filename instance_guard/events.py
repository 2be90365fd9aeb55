#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
instance_guard/events.py
========================

Minimal callback list used for the `notified` and `error` streams.

Callbacks run on the thread that emits. A failing callback is logged and the
remaining callbacks still run.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

from instance_guard.utils import LIBRARY_LOGGER


class EventStream:
    """
    Ordered list of subscribers for one event kind (`notified`, `error`).

    Subscribing the same callable twice has no effect. emit() calls a snapshot
    of the subscribers, so a callback may connect or disconnect freely.
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(LIBRARY_LOGGER)
        self._callbacks: List[Callable] = []
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._callbacks)

    def connect(self, callback: Callable) -> Callable:
        """Subscribe `callback`; returns it so this can be used as a decorator."""
        with self._lock:
            if callback not in self._callbacks:
                self._callbacks.append(callback)
        return callback

    def disconnect(self, callback: Callable) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def emit(self, *args) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            try:
                cb(*args)
            except Exception:
                self.logger.exception(f"'{self.name}' callback {cb!r} raised")

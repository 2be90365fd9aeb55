#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
instance_guard/instance.py
==========================

SingleInstance: the one object each process owns.

Lifecycle
---------
construction
  -> claim WON   -> bind listener -> Role.PRIMARY (listening)
                                  -> bind failed: Role.PRIMARY, not listening,
                                     `error` emitted, claim kept
  -> claim LOST  -> Role.SECONDARY
  -> ClaimError  -> Role.FAILED (treated as "already running"), `error` emitted

The role is decided once and never changes. close() releases the listener and
the claim; it is idempotent and also runs from __exit__, or through a
weakref.finalize hook once the last reference to the instance is dropped.
Nothing that the hook releases (claim, listener, service thread) refers back
to the instance, so dropping it is enough to free the identifier.

Threading
---------
serve=True (default) starts a daemon service thread that runs the listener's
reactor step; `notified` callbacks then run on that thread.
serve=False leaves dispatch to the caller: call process_events() from your own
loop, or register fileno() with your own selector / asyncio loop. Callbacks
then run on the caller's thread.

Usage
-----
    guard = SingleInstance("com.example.viewer")
    if guard.is_already_running():
        guard.notify()
        raise SystemExit(0)
    guard.notified.connect(bring_window_to_front)
"""

from __future__ import annotations

import enum
import time
import logging
import weakref
import threading
from typing import Callable, List, Optional

from instance_guard import channel
from instance_guard.claim import ClaimOutcome, PrimaryClaim
from instance_guard.errors import ClaimError, ListenError
from instance_guard.events import EventStream
from instance_guard.utils import LIBRARY_LOGGER, GuardSettings


class Role(enum.Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Owned resources
# ---------------------------------------------------------------------------
class _Resources:
    """
    Claim, listener and service thread of one SingleInstance.

    Holds no reference to the instance, so it can be torn down by the
    instance's finalizer.
    """

    def __init__(self, claim: PrimaryClaim):
        self.claim = claim
        self.listener: Optional[channel.NotificationListener] = None
        self.thread: Optional[threading.Thread] = None
        self.stop = threading.Event()
        self._lock = threading.Lock()

    def shutdown(self) -> None:
        self.stop.set()
        if self.listener is not None:
            self.listener.wakeup()

        thread = self.thread
        if thread is not None and thread is threading.current_thread():
            # Called from a callback: the service loop releases on its way out.
            return
        if thread is not None:
            thread.join()
        self.release()

    def release(self) -> None:
        with self._lock:
            if self.listener is not None:
                self.listener.close()
            self.claim.release()


def _dispatch_to(ref: weakref.ReferenceType[SingleInstance]) -> Callable[[], None]:
    def on_connection() -> None:
        inst = ref()
        if inst is not None:
            inst._handle_connection()
    return on_connection


def _serve(ref: weakref.ReferenceType[SingleInstance], res: _Resources,
           poll_interval: float, identifier: str) -> None:
    """Service thread body; stops on close() or once the instance is collected."""
    try:
        while not res.stop.is_set() and ref() is not None:
            res.listener.poll(poll_interval)
    except OSError as e:
        inst = ref()
        if inst is not None:
            inst._report(f"Notification listener for '{identifier}' stopped: {e}")
    finally:
        if res.stop.is_set() or ref() is None:
            res.release()


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------
class SingleInstance:
    def __init__(
        self,
        identifier: str,
        *,
        settings: Optional[GuardSettings] = None,
        on_notified: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        serve: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        if not isinstance(identifier, str) or not identifier:
            raise ValueError("identifier must be a non-empty string")

        self.identifier = identifier
        self.settings = settings or GuardSettings()
        self.runtime_dir = self.settings.resolved_runtime_dir()
        self.logger = logger or logging.getLogger(LIBRARY_LOGGER)

        self.notified = EventStream("notified", self.logger)
        self.error = EventStream("error", self.logger)
        if on_notified is not None:
            self.notified.connect(on_notified)
        if on_error is not None:
            self.error.connect(on_error)

        self._role = Role.FAILED
        self._errors: List[str] = []
        self._res = _Resources(PrimaryClaim(identifier, self.runtime_dir, logger=self.logger))
        self._finalizer = weakref.finalize(self, self._res.shutdown)

        # Guards the counters below and wakes wait_for_notification().
        self._cond = threading.Condition()
        self._received = 0
        self._consumed = 0
        self._closed = False

        try:
            self._role = self._start(serve)
        except BaseException:
            self.close()
            raise

    def __repr__(self):
        return (f"<SingleInstance {self.identifier!r} role={self._role.value} "
                f"listening={self.listening} closed={self._closed}>")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # ---------- state ----------
    @property
    def role(self) -> Role:
        return self._role

    @property
    def listening(self) -> bool:
        listener = self._res.listener
        return listener is not None and listener.bound

    @property
    def notification_count(self) -> int:
        with self._cond:
            return self._received

    @property
    def errors(self) -> List[str]:
        return list(self._errors)

    @property
    def closed(self) -> bool:
        return self._closed

    def is_already_running(self) -> bool:
        """True unless this process holds the claim (listening or not)."""
        return self._role is not Role.PRIMARY

    # ---------- commands ----------
    def notify(self) -> None:
        """Tell the primary that another launch happened. No-op on the primary."""
        if self._role is Role.PRIMARY:
            self.logger.debug(f"[{self.identifier}] notify() ignored: this is the primary")
            return
        channel.signal(self.identifier, self.runtime_dir,
                       timeout=self.settings.connect_timeout, logger=self.logger)

    def fileno(self) -> int:
        """Listener descriptor for external event loops; -1 when not listening."""
        if self._res.listener is None:
            return -1
        return self._res.listener.fileno()

    def process_events(self, timeout: Optional[float] = 0.0) -> int:
        """
        Run one listener step on the calling thread (serve=False mode).

        Returns the number of notifications delivered; returns early when
        close() is called from another thread.
        """
        if self._res.thread is not None:
            raise RuntimeError("notifications are dispatched by the service thread (serve=True)")
        if self._res.listener is None or self._closed:
            return 0
        return self._res.listener.poll(timeout)

    def wait_for_notification(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a notification not yet consumed by this method is available.

        Each notification satisfies exactly one wait. Returns False on timeout,
        when not listening, or once the instance is closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if self._res.listener is None:
            return False

        if self._res.thread is None:
            while True:
                if self._take_pending():
                    return True
                if self._closed:
                    return False
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self.process_events(remaining)

        with self._cond:
            ready = self._cond.wait_for(lambda: self._received > self._consumed or self._closed,
                                        timeout)
            if ready and self._received > self._consumed:
                self._consumed += 1
                return True
            return False

    def close(self) -> None:
        """Stop listening and release the claim. Safe to call repeatedly."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self._finalizer()

    # ---------- internals ----------
    def _start(self, serve: bool) -> Role:
        try:
            outcome = self._res.claim.try_claim()
        except ClaimError as e:
            self._report(f"Claim status unconfirmed for '{self.identifier}': {e}")
            return Role.FAILED

        if outcome is ClaimOutcome.LOST:
            self.logger.info(f"[{self.identifier}] another instance is already running")
            return Role.SECONDARY

        ref = weakref.ref(self)
        listener = channel.NotificationListener(
            self.identifier, self.runtime_dir,
            on_connection=_dispatch_to(ref),
            backlog=self.settings.backlog,
            logger=self.logger,
        )
        try:
            listener.bind()
        except ListenError as e:
            self._report(f"Primary for '{self.identifier}' cannot receive notifications: {e}")
            return Role.PRIMARY

        self._res.listener = listener
        if serve:
            self._res.thread = threading.Thread(
                target=_serve,
                args=(ref, self._res, self.settings.poll_interval, self.identifier),
                name=f"instance-guard[{self.identifier}]",
                daemon=True,
            )
            self._res.thread.start()
        self.logger.info(f"[{self.identifier}] primary instance, listening on {listener.address}")
        return Role.PRIMARY

    def _handle_connection(self) -> None:
        with self._cond:
            self._received += 1
            n = self._received
            self._cond.notify_all()
        self.logger.info(f"[{self.identifier}] notified by another instance (#{n})")
        self.notified.emit()

    def _take_pending(self) -> bool:
        with self._cond:
            if self._received > self._consumed:
                self._consumed += 1
                return True
            return False

    def _report(self, message: str) -> None:
        self.logger.error(message)
        self._errors.append(message)
        self.error.emit(message)

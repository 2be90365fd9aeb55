#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
instance_guard/channel.py
=========================

Local notification channel: a listener owned by the primary and a
fire-and-forget client usable by anyone.

Wire format
-----------
None. A connection IS the notification; bytes sent by a client are ignored
and the accepted connection is closed right away.

Endpoints
---------
Both flavours are a file named after the full identifier digest, so two
identifiers never share an endpoint:

- AF_UNIX (POSIX, and Windows builds that expose it):
    stream socket `<runtime_dir>/instance-guard-<digest>.sock`
- no AF_UNIX:
    loopback TCP socket on an OS-assigned port; the port number is published
    in `<runtime_dir>/instance-guard-<digest>.port`

A crashed primary leaves the file behind; the next primary removes it before
binding.

The listener never blocks: poll() is one reactor step (select, accept all
pending connections, one callback per connection). Whoever owns the listener
decides which thread runs it; close() and wakeup() may be called from any
thread and interrupt a poll() in progress.
"""

from __future__ import annotations

import os
import socket
import logging
import selectors
import threading
from typing import Callable, Optional, Tuple, Union

from instance_guard.errors import ListenError
from instance_guard.utils import LIBRARY_LOGGER, artifact_name

Address = Union[str, Tuple[str, int]]

LOOPBACK = "127.0.0.1"

# Missing on some Windows builds.
_AF_UNIX = getattr(socket, "AF_UNIX", None)

_LISTEN = "listen"
_WAKE = "wake"


def endpoint_address(identifier: str, runtime_dir: str) -> Tuple[int, str]:
    """Return (socket family, endpoint file path) for `identifier`."""
    name = artifact_name(identifier)
    if _AF_UNIX is not None:
        return _AF_UNIX, os.path.join(runtime_dir, name + ".sock")
    return socket.AF_INET, os.path.join(runtime_dir, name + ".port")


def _read_port_file(path: str) -> Optional[Tuple[str, int]]:
    try:
        with open(path, "r", encoding="ascii") as f:
            port = int(f.read().strip())
    except (OSError, ValueError):
        return None
    if not 0 < port < 65536:
        return None
    return LOOPBACK, port


def connect_address(family: int, path: str) -> Optional[Address]:
    """Socket address to connect to, or None when no port is published."""
    if family == _AF_UNIX:
        return path
    return _read_port_file(path)


def signal(identifier: str, runtime_dir: str, timeout: float = 1.0,
           logger: Optional[logging.Logger] = None) -> bool:
    """
    Connect to the endpoint of `identifier` and hang up immediately.

    Never raises for a missing or refusing endpoint; the return value only
    says whether the connection was made, for logging.
    """
    logger = logger or logging.getLogger(LIBRARY_LOGGER)
    family, path = endpoint_address(identifier, runtime_dir)
    address = connect_address(family, path)
    if address is None:
        logger.debug(f"No endpoint published at {path}")
        return False
    try:
        with socket.socket(family, socket.SOCK_STREAM) as s:
            s.settimeout(timeout)
            s.connect(address)
    except OSError as e:
        logger.debug(f"No listener reachable at {address}: {e}")
        return False
    logger.debug(f"Signalled listener at {address}")
    return True


class NotificationListener:
    """
    Named listener for one identifier.

    `on_connection` is called once per accepted connection, in accept order,
    on whichever thread calls poll().
    """

    def __init__(self, identifier: str, runtime_dir: str,
                 on_connection: Callable[[], None],
                 backlog: int = 64,
                 logger: Optional[logging.Logger] = None):
        self.identifier = identifier
        self.runtime_dir = runtime_dir
        self.on_connection = on_connection
        self.backlog = backlog
        self.logger = logger or logging.getLogger(LIBRARY_LOGGER)
        self.family, self.address = endpoint_address(identifier, runtime_dir)
        self._sock: Optional[socket.socket] = None
        self._selector: Optional[selectors.BaseSelector] = None
        self._wake_r: Optional[socket.socket] = None
        self._wake_w: Optional[socket.socket] = None
        # Held for a whole poll() step; reentrant so callbacks may close().
        self._lock = threading.RLock()

    @property
    def bound(self) -> bool:
        return self._sock is not None

    def bind(self) -> None:
        """
        Remove any stale endpoint and start listening.

        Only call this while holding the claim for the identifier: that is
        what makes removing an existing endpoint file safe.
        """
        with self._lock:
            if self._sock is not None:
                return
            self._remove_stale_endpoint()

            sock = socket.socket(self.family, socket.SOCK_STREAM)
            try:
                os.makedirs(self.runtime_dir, exist_ok=True)
                if self.family == _AF_UNIX:
                    sock.bind(self.address)
                else:
                    sock.bind((LOOPBACK, 0))
                sock.listen(self.backlog)
                sock.setblocking(False)
                if self.family != _AF_UNIX:
                    self._publish_port(sock.getsockname()[1])
                wake_r, wake_w = socket.socketpair()
            except OSError as e:
                sock.close()
                raise ListenError(f"Unable to listen on {self.address}: {e}") from e

            wake_r.setblocking(False)
            wake_w.setblocking(False)
            sel = selectors.DefaultSelector()
            sel.register(sock, selectors.EVENT_READ, _LISTEN)
            sel.register(wake_r, selectors.EVENT_READ, _WAKE)
            self._sock = sock
            self._selector = sel
            self._wake_r, self._wake_w = wake_r, wake_w
            self.logger.debug(f"Listening on {self.address}")

    def fileno(self) -> int:
        if self._sock is None:
            return -1
        return self._sock.fileno()

    def poll(self, timeout: Optional[float] = 0.0) -> int:
        """
        One reactor step: wait up to `timeout` seconds for pending connections,
        accept all of them, and fire on_connection() once per connection.

        Returns early (0) when wakeup() or close() is called meanwhile.
        Returns the number of connections handled.
        """
        with self._lock:
            if self._selector is None:
                return 0
            events = self._selector.select(timeout)

            handled = 0
            for key, _ in events:
                if key.data == _WAKE:
                    self._drain_wakeups()
                    continue
                while self._sock is not None:
                    try:
                        conn, _ = self._sock.accept()
                    except BlockingIOError:
                        break
                    except OSError as e:
                        self.logger.warning(f"accept() failed on {self.address}: {e}")
                        break
                    conn.close()
                    handled += 1
                    self.on_connection()
                if self._sock is None:
                    break
            return handled

    def wakeup(self) -> None:
        """Make a poll() blocked on another thread return promptly."""
        w = self._wake_w
        if w is None:
            return
        try:
            w.send(b"\0")
        except OSError:
            # Pipe full (a wakeup is already pending) or already closed.
            pass

    def close(self) -> None:
        """Stop accepting and release the endpoint. Idempotent."""
        self.wakeup()
        with self._lock:
            if self._selector is not None:
                self._selector.close()
                self._selector = None
            for s in (self._wake_r, self._wake_w):
                if s is not None:
                    s.close()
            self._wake_r = self._wake_w = None
            if self._sock is None:
                return
            sock, self._sock = self._sock, None
            sock.close()
            try:
                os.unlink(self.address)
            except FileNotFoundError:
                pass
            except OSError as e:
                self.logger.warning(f"Could not remove endpoint {self.address}: {e}")
            self.logger.debug(f"Stopped listening on {self.address}")

    def _drain_wakeups(self) -> None:
        if self._wake_r is None:
            return
        try:
            while self._wake_r.recv(512):
                pass
        except (BlockingIOError, InterruptedError):
            pass

    def _publish_port(self, port: int) -> None:
        tmp = f"{self.address}.{os.getpid()}.tmp"
        with open(tmp, "w", encoding="ascii") as f:
            f.write(f"{port}\n")
        os.replace(tmp, self.address)

    def _remove_stale_endpoint(self) -> None:
        try:
            os.unlink(self.address)
            self.logger.info(f"Removed stale endpoint {self.address}")
        except FileNotFoundError:
            pass
        except OSError as e:
            # bind() will fail next and report it.
            self.logger.warning(f"Could not remove stale endpoint {self.address}: {e}")

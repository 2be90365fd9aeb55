#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
instance_guard/claim.py
=======================

Atomic "who is primary" claim for one identifier.

POSIX
-----
Exclusive, non-blocking flock() on `<runtime_dir>/instance-guard-<digest>.lock`.
flock locks belong to the open file description, so a second claim in the SAME
process loses just like a claim from another process, and the kernel drops the
lock when the holder exits (even on SIGKILL).

Windows
-------
Named kernel mutex `Local\\instance-guard-<digest>` (CreateMutexW +
ERROR_ALREADY_EXISTS). The mutex disappears with its last handle.
"""

from __future__ import annotations

import os
import sys
import enum
import logging
from typing import Optional

from instance_guard.errors import ClaimError
from instance_guard.utils import LIBRARY_LOGGER, artifact_name

ERROR_ALREADY_EXISTS = 183


class ClaimOutcome(enum.Enum):
    WON = "won"
    LOST = "lost"


def lock_path(identifier: str, runtime_dir: str) -> str:
    return os.path.join(runtime_dir, artifact_name(identifier) + ".lock")


class PrimaryClaim:
    """Holds (or fails to hold) the claim token for one identifier."""

    def __init__(self, identifier: str, runtime_dir: str, logger: Optional[logging.Logger] = None):
        self.identifier = identifier
        self.runtime_dir = runtime_dir
        self.logger = logger or logging.getLogger(LIBRARY_LOGGER)
        self.path = lock_path(identifier, runtime_dir)
        self.fd: Optional[int] = None
        self._handle = None
        self._attempted = False

    @property
    def held(self) -> bool:
        return self.fd is not None or self._handle is not None

    def try_claim(self) -> ClaimOutcome:
        """
        Attempt the atomic create-if-absent.

        Returns ClaimOutcome.WON / ClaimOutcome.LOST; raises ClaimError when the
        primitive itself cannot be created.
        """
        if self._attempted:
            raise ClaimError(f"Claim for '{self.identifier}' was already attempted")
        self._attempted = True

        if sys.platform == "win32":
            return self._claim_mutex()
        return self._claim_flock()

    def release(self) -> None:
        """Release the token if held. Safe to call repeatedly."""
        if self.fd is not None:
            import fcntl
            fd, self.fd = self.fd, None
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
            # The lock file stays on disk: unlinking it while another process
            # is between open() and flock() would let two holders coexist.
            self.logger.debug(f"Released claim {self.path}")

        if self._handle is not None:
            handle, self._handle = self._handle, None
            _win32_api().CloseHandle(handle)
            self.logger.debug(f"Released claim mutex for '{self.identifier}'")

    # ---------- POSIX ----------
    def _claim_flock(self) -> ClaimOutcome:
        import fcntl
        try:
            os.makedirs(self.runtime_dir, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise ClaimError(f"Unable to create claim file {self.path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            self.logger.debug(f"Claim {self.path} held by another instance")
            return ClaimOutcome.LOST
        except OSError as e:
            os.close(fd)
            raise ClaimError(f"Unable to lock claim file {self.path}: {e}") from e

        # Informational only: pid of the current holder.
        try:
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode("ascii"))
        except OSError as e:
            self.logger.debug(f"Could not record pid in {self.path}: {e}")

        self.fd = fd
        self.logger.debug(f"Claimed {self.path}")
        return ClaimOutcome.WON

    # ---------- Windows ----------
    def _claim_mutex(self) -> ClaimOutcome:
        import ctypes
        api = _win32_api()
        name = "Local\\" + artifact_name(self.identifier)
        handle = api.CreateMutexW(None, False, name)
        if not handle:
            raise ClaimError(f"Failed to create process mutex {name} (error {ctypes.get_last_error()})")

        if ctypes.get_last_error() == ERROR_ALREADY_EXISTS:
            api.CloseHandle(handle)
            self.logger.debug(f"Claim mutex {name} held by another instance")
            return ClaimOutcome.LOST

        self._handle = handle
        self.logger.debug(f"Claimed mutex {name}")
        return ClaimOutcome.WON


_KERNEL32 = None


def _win32_api():
    global _KERNEL32
    if _KERNEL32 is None:
        import ctypes
        from ctypes import wintypes

        k32 = ctypes.WinDLL("kernel32", use_last_error=True)
        k32.CreateMutexW.argtypes = [wintypes.LPVOID, wintypes.BOOL, wintypes.LPCWSTR]
        k32.CreateMutexW.restype = wintypes.HANDLE
        k32.CloseHandle.argtypes = [wintypes.HANDLE]
        k32.CloseHandle.restype = wintypes.BOOL
        _KERNEL32 = k32
    return _KERNEL32

"""
instance_guard/errors.py
========================

Exception hierarchy for the single-instance guard.

Losing the claim is NOT an error (it simply makes the process a secondary);
only failures of the underlying OS primitives end up here.
"""

from __future__ import annotations


class InstanceGuardError(Exception):
    """Base class for every error raised by instance_guard."""


class ClaimError(InstanceGuardError):
    """The claim primitive (lock file / named mutex) could not be created."""


class ListenError(ClaimError):
    """The claim was won but the notification endpoint could not be bound."""


class SettingsError(InstanceGuardError):
    """Settings file missing or malformed."""

"""Single-instance guard: elect one primary per identifier and let later launches notify it."""

from instance_guard.errors import ClaimError, InstanceGuardError, ListenError, SettingsError
from instance_guard.instance import Role, SingleInstance
from instance_guard.utils import GuardSettings

__all__ = [
    "ClaimError",
    "GuardSettings",
    "InstanceGuardError",
    "ListenError",
    "Role",
    "SettingsError",
    "SingleInstance",
]

"""Shared fixtures: a fresh identifier and a short private runtime directory per test."""

import os
import shutil
import tempfile
import uuid

import pytest

from instance_guard.instance import SingleInstance
from instance_guard.utils import GuardSettings

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))


@pytest.fixture
def runtime_dir():
    # mkdtemp keeps AF_UNIX paths short; pytest's tmp_path can exceed sun_path.
    d = tempfile.mkdtemp(prefix="ig-")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def identifier():
    return "{%s}" % uuid.uuid4()


@pytest.fixture
def guard_settings(runtime_dir):
    return GuardSettings(runtime_dir=runtime_dir, connect_timeout=1.0, poll_interval=0.05)


@pytest.fixture
def make_instance(guard_settings):
    """Factory closing every instance it built, newest first."""
    created = []

    def _make(identifier, **kwargs):
        kwargs.setdefault("settings", guard_settings)
        inst = SingleInstance(identifier, **kwargs)
        created.append(inst)
        return inst

    yield _make
    for inst in reversed(created):
        inst.close()


@pytest.fixture
def child_env():
    """Environment for child interpreters so `-m instance_guard` imports from this checkout."""
    env = os.environ.copy()
    pp = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = os.pathsep.join([REPO_ROOT] + ([pp] if pp else []))
    return env

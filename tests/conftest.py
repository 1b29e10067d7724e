"""
Pytest configuration and shared fixtures for proxsave tests.

Collectors never touch the real host in tests: the fixtures here build a
fake host tree under tmp_path (used as ``system_root_prefix``) and a
scripted process runner that returns canned command output.
"""

from pathlib import Path

import pytest
from helpers import (
    COMMON_HOST_FILES,
    FIXED_NOW,
    HOSTNAME,
    PBS_HOST_FILES,
    PVE_HOST_FILES,
    FakeRunner,
    make_config,
    write_tree,
)
from loguru import logger

from proxsave.collect.base import CollectionSession, CollectorDeps
from proxsave.config.settings import EngineConfig
from proxsave.process.privilege import UnprivilegedInfo


# ==============================================================================
# Process Fixtures
# ==============================================================================


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Fixture providing a FakeRunner whose commands all succeed."""
    return FakeRunner()


@pytest.fixture
def privileged():
    """Privilege probe reporting a normal root environment."""
    return lambda: UnprivilegedInfo(detected=False, euid=0)


@pytest.fixture
def unprivileged():
    """Privilege probe reporting a user-namespaced LXC container."""
    return lambda: UnprivilegedInfo(
        detected=True,
        uid_shifted=True,
        gid_shifted=True,
        euid=0,
        container_runtime="lxc",
        details="uid 0 -> 100000, gid 0 -> 100000, euid=0, container=lxc",
    )


@pytest.fixture
def deps(fake_runner, privileged) -> CollectorDeps:
    return CollectorDeps(runner=fake_runner, privilege=privileged)


# ==============================================================================
# Host Tree Fixtures
# ==============================================================================


@pytest.fixture
def host_root(tmp_path) -> Path:
    """
    Fixture providing a fake PVE host filesystem.

    Returns:
        Path used as ``system_root_prefix``.
    """
    root = tmp_path / "host"
    write_tree(root, COMMON_HOST_FILES)
    write_tree(root, PVE_HOST_FILES)
    return root


@pytest.fixture
def pbs_host_root(tmp_path) -> Path:
    """Fixture providing a fake PBS host filesystem."""
    root = tmp_path / "pbs-host"
    write_tree(root, COMMON_HOST_FILES)
    write_tree(root, PBS_HOST_FILES)
    return root


# ==============================================================================
# Configuration and Session Fixtures
# ==============================================================================


@pytest.fixture
def engine_config(host_root, tmp_path) -> EngineConfig:
    """Fixture providing an EngineConfig pointed at the fake PVE host."""
    return make_config(host_root, tmp_path)


@pytest.fixture
def pbs_config(pbs_host_root, tmp_path) -> EngineConfig:
    """Fixture providing an EngineConfig pointed at the fake PBS host."""
    return make_config(pbs_host_root, tmp_path)


@pytest.fixture
def staging_root(tmp_path) -> Path:
    path = tmp_path / "stage"
    path.mkdir()
    return path


@pytest.fixture
def make_session(staging_root, deps):
    """Factory fixture building a CollectionSession for a config."""

    def factory(config: EngineConfig, **kwargs) -> CollectionSession:
        kwargs.setdefault("deps", deps)
        kwargs.setdefault("hostname", HOSTNAME)
        kwargs.setdefault("created_at", FIXED_NOW)
        kwargs.setdefault("job_id", "test-job")
        return CollectionSession(config, staging_root, **kwargs)

    return factory


@pytest.fixture
def session(engine_config, make_session) -> CollectionSession:
    return make_session(engine_config)


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records: list = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)

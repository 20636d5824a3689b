"""
Shared fixtures: every test gets its own store directory under tmp_path.
"""

import pytest

from opencontext.core.config import ImproverConfig
from opencontext.core.control_plane import ControlPlane
from opencontext.core.observer import Observer
from opencontext.core.store import ContextStore


@pytest.fixture
def config(tmp_path):
    """Config rooted in a temporary store directory, compiled-in defaults."""
    return ImproverConfig(home=tmp_path)


@pytest.fixture
def store(config):
    return ContextStore(config.db_path)


@pytest.fixture
def observer(config):
    return Observer(config.observer_path)


@pytest.fixture
def control_plane(observer, config):
    return ControlPlane(observer, config)

"""Shared fixtures for procshell tests."""

import pytest

from procshell import config
from procshell.testing import mock


@pytest.fixture(autouse=True)
def clean_config():
    """Drop path overrides and cached settings around every test."""
    config.reset()
    yield
    config.reset()


@pytest.fixture
def command_mock():
    """Active mock session, closed when the test ends."""
    with mock.enable() as session:
        yield session

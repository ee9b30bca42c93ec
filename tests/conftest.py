"""Shared pytest fixtures for stack-driver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from fakes import FakeProvisioner  # noqa: E402

EXAMPLE_STACK = Path(__file__).parent.parent / 'examples' / 'customer-service' / 'stack.yaml'


@pytest.fixture
def provisioner():
    """Fake provisioner that accepts everything."""
    return FakeProvisioner()


@pytest.fixture
def fast_settings():
    """Stack file settings with sub-second waits."""
    return {
        'workers': 4,
        'poll_interval': 0.01,
        'readiness_timeout': 0.2,
        'deploy_timeout': 0.2,
    }


@pytest.fixture
def example_stack():
    """Path to the bundled customer-service stack file."""
    return EXAMPLE_STACK

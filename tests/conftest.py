"""Shared fixtures: engine inspect results and container snapshots."""

import copy
from unittest.mock import MagicMock

import pytest

from isengard.config import Config
from isengard.docker_engine import ContainerSnapshot

CONTAINER_ID = 'abcdef1234567890abcdef1234567890abcdef1234567890abcdef1234567890'
NEW_CONTAINER_ID = '0123456789ab0123456789ab0123456789ab0123456789ab0123456789abcdef'

_BASE_INFO = {
    'Id': CONTAINER_ID,
    'Name': '/app',
    'Config': {
        'Hostname': 'abcdef123456',  # matches Id[:12] by default
        'User': '',
        'WorkingDir': '',
        'Env': ['PATH=/usr/bin:/bin', 'APP_MODE=prod'],
        'Labels': {'com.example.team': 'web'},
        'Cmd': None,
        'Image': 'app:old',
        'Volumes': None,
    },
    'HostConfig': {
        'RestartPolicy': {'Name': 'unless-stopped', 'MaximumRetryCount': 0},
        'NetworkMode': 'default',
        'PortBindings': None,
        'Binds': None,
        'Mounts': None,
        'Memory': 0,
    },
    'Mounts': [],
    'NetworkSettings': {'Networks': {'bridge': {'Aliases': None, 'IPAMConfig': None}}},
}


def make_container_info(**overrides):
    """Build a minimal container inspect result with sensible defaults."""
    info = copy.deepcopy(_BASE_INFO)
    # Apply overrides by merging into nested dicts
    for key, value in overrides.items():
        if key in info and isinstance(info[key], dict) and isinstance(value, dict):
            info[key].update(value)
        else:
            info[key] = value
    return info


@pytest.fixture
def container_info():
    return make_container_info


@pytest.fixture
def snapshot():
    def _make(**fields):
        values = {
            'id': CONTAINER_ID,
            'name': 'app',
            'image': 'app:old',
            'image_id': 'sha256:' + '1' * 64,
            'labels': {},
            'repo_digests': (),
            'state': 'running',
        }
        values.update(fields)
        return ContainerSnapshot(**values)
    return _make


@pytest.fixture
def config(tmp_path):
    """Config whose credential store does not exist."""
    return Config(docker_config=str(tmp_path / 'docker'), cleanup=False)


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.create_container.return_value = NEW_CONTAINER_ID
    return engine


@pytest.fixture
def call_names():
    """Names of the methods called on a mock, in call order."""
    return lambda mock: [c[0] for c in mock.method_calls]

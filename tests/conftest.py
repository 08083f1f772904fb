"""
Pytest configuration and shared fixtures for infra-state tests.
"""

import tempfile
from pathlib import Path

import boto3
import pytest
from moto import mock_aws

from infra_state.core.config import BackendConfig
from infra_state.state.backend import StateBackend
from infra_state.state.coordinator import StateCoordinator


REGION = 'us-east-1'


def make_backend(bucket: str = 'test-state-bucket', lock_table: str = 'test-state-locks', **kwargs) -> StateBackend:
    """Bootstrap a backend inside an active moto mock."""
    config = BackendConfig(bucket=bucket, lock_table=lock_table, region=REGION, **kwargs)
    backend = StateBackend(boto3.Session(region_name=REGION), config)
    backend.bootstrap()
    return backend


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so nothing can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', REGION)


@pytest.fixture
def backend(aws_credentials):
    """Bootstrapped S3 bucket and DynamoDB lock table."""
    with mock_aws():
        yield make_backend()


@pytest.fixture
def lock_table(backend):
    return backend.lock_table()


@pytest.fixture
def object_store(backend):
    return backend.object_store()


@pytest.fixture
def coordinator(lock_table, object_store):
    return StateCoordinator(lock_table, object_store, holder='operator-a')


@pytest.fixture
def temp_config_dir():
    """Temporary directory for config files."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)

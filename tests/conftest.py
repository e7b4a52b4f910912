"""
Shared pytest fixtures for SHARR tests.

This module provides common test fixtures used across the unit tests:
environment-backed settings, sample findings, playbook properties, mocked
AWS client providers and an in-memory audit store.

Usage:
    def test_something(sg_finding, props):
        # Fixtures are injected automatically by pytest
        assert sg_finding.control_id == "EC2.19"
"""

from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock

import pytest
from _pytest.monkeypatch import MonkeyPatch

from sharr.audit_store import AuditStore
from sharr.config import Settings, get_settings
from sharr.models import Finding, PlaybookProperties
from sharr.notifier import SecretsManagerResolver


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def mock_env_vars(monkeypatch: MonkeyPatch) -> dict[str, str]:
    """
    Set up mock environment variables for testing.

    Args:
        monkeypatch: pytest monkeypatch fixture

    Returns:
        Dictionary of environment variable names and values
    """
    env_vars = {
        "AWS_REGION": "us-east-1",
        "REMEDIATION_ROLE_ARN": "arn:aws:iam::{account_id}:role/SO0111-Remediation",
        "TICKETING_SYSTEM": "none",
        "AUDIT_DB_PATH": ":memory:",
        "MAX_CONCURRENT_WORKERS": "2",
        "LOG_LEVEL": "DEBUG",
        "STATE_RETENTION_DAYS": "7",
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)
    for key in (
        "TICKET_SECRET_ARN",
        "TICKETING_INSTANCE_URI",
        "TICKETED_CONTROLS",
        "JIRA_PROJECT_KEY",
    ):
        monkeypatch.delenv(key, raising=False)

    get_settings.cache_clear()
    return env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str]) -> Settings:
    """
    Provide a Settings instance built from mock_env_vars.

    The lru_cache on get_settings is bypassed by creating Settings directly.
    """
    _ = mock_env_vars
    return Settings()  # pyright: ignore[reportCallIssue]


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def sg_finding() -> Finding:
    """NIST 800-53 EC2.19 finding for security group sg-123."""
    return Finding(
        standard_id="NIST80053",
        control_id="EC2.19",
        resource_id="sg-123",
        account_id="111111111111",
        region="us-east-1",
    )


@pytest.fixture
def bucket_finding() -> Finding:
    """AFSBP S3.8 finding for a bucket identified by ARN."""
    return Finding(
        standard_id="AFSBP",
        control_id="S3.8",
        resource_id="arn:aws:s3:::example-bucket",
        account_id="111111111111",
        region="us-east-1",
    )


@pytest.fixture
def props() -> PlaybookProperties:
    """Playbook properties with an account-templated remediation role."""
    return PlaybookProperties(
        remediation_role_arn="arn:aws:iam::{account_id}:role/SO0111-Remediation",
        secret_reference="arn:aws:secretsmanager:us-east-1:111111111111:secret:ticketing",
        solution_metadata={"solutionId": "SO0111", "solutionVersion": "v0.1.0"},
    )


# =============================================================================
# Mock Fixtures
# =============================================================================


@pytest.fixture
def no_sleep() -> list[float]:
    """
    Recorder used in place of time.sleep.

    Pass ``no_sleep.append`` as the ``sleep`` argument; the list collects
    every backoff delay requested.
    """
    return []


@pytest.fixture
def ec2_client() -> MagicMock:
    """MagicMock standing in for a boto3 EC2 client."""
    return MagicMock()


@pytest.fixture
def s3_client() -> MagicMock:
    """MagicMock standing in for a boto3 S3 client."""
    return MagicMock()


@pytest.fixture
def aws_clients(ec2_client: MagicMock, s3_client: MagicMock) -> MagicMock:
    """
    Client provider returning the mocked EC2 and S3 clients.

    Mirrors AssumeRoleClientProvider.client(service, account_id, region).
    """
    services: dict[str, MagicMock] = {"ec2": ec2_client, "s3": s3_client}

    def client(service: str, account_id: str, region: str | None = None) -> Any:
        _ = (account_id, region)
        return services[service]

    provider = MagicMock()
    provider.client.side_effect = client
    return provider


@pytest.fixture
def mock_secret_resolver() -> MagicMock:
    """Secret resolver returning a Username/Password credential."""
    resolver = MagicMock(spec=SecretsManagerResolver)
    resolver.resolve.return_value = {
        "Username": "sharr-bot@example.com",
        "Password": "api-token-value",
    }
    return resolver


@pytest.fixture
def audit_store() -> Generator[AuditStore, None, None]:
    """In-memory audit store with the schema initialized."""
    store = AuditStore(db_path=":memory:")
    store.initialize_schema()
    yield store
    store.close()

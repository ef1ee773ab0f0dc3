"""Pytest configuration and fixtures."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from classifier import CallOutcome, ErrorKind, RemoteError
from db import MemoryStateStore


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def store():
    """In-memory state store."""
    return MemoryStateStore()


@pytest.fixture
def mock_client():
    """IAM client whose services are AsyncMocks returning CallOutcomes."""
    client = MagicMock()
    client.users = MagicMock()
    client.email_templates = MagicMock()
    for service in (client.users, client.email_templates):
        service.get_by_login = AsyncMock(
            return_value=empty_outcome("GetUserByLoginID")
        )
        service.get_by_id = AsyncMock()
        service.create = AsyncMock()
        service.change_login = AsyncMock()
        service.update_profile = AsyncMock()
        service.delete = AsyncMock()
    return client


def ok_outcome(operation, record=None, status_code=200):
    return CallOutcome(operation, status_code=status_code, record=record, ok=True)


def empty_outcome(operation, status_code=404):
    return CallOutcome(
        operation,
        status_code=status_code,
        error=RemoteError(ErrorKind.EMPTY_RESULTS, "no results"),
    )


def error_outcome(operation, status_code=500, kind=ErrorKind.HTTP, message="boom"):
    return CallOutcome(
        operation, status_code=status_code, error=RemoteError(kind, message)
    )


def remote_user(
    user_id="user-1",
    login="jdoe",
    email="jdoe@example.com",
    org="org-1",
    first_name="John",
    last_name="Doe",
    mobile="",
    language="en-US",
    channel="email",
):
    """A Person record as the identity service returns it."""
    telecom = [{"system": "email", "value": email}]
    if mobile:
        telecom.append({"system": "mobile", "value": mobile})
    return {
        "id": user_id,
        "loginId": login,
        "managingOrganization": org,
        "name": {"given": first_name, "family": last_name},
        "telecom": telecom,
        "preferredLanguage": language,
        "preferredCommunicationChannel": channel,
    }


@pytest.fixture
def user_spec():
    """Declared user descriptor."""
    return {
        "login": "jdoe",
        "email": "jdoe@example.com",
        "password": "s3cret!",
        "first_name": "John",
        "last_name": "Doe",
        "organization_id": "org-1",
    }


@pytest.fixture
def template_spec():
    """Declared email template descriptor."""
    return {
        "managing_organization": "org-1",
        "type": "ACCOUNT_VERIFICATION",
        "message": "Hello {{name}}",
    }

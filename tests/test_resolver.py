"""Unit tests for resolver.py - Natural-key resolution."""

import pytest

from conftest import empty_outcome, error_outcome, ok_outcome, remote_user
from errors import ConflictError, TransportFailure
from resolver import resolve
from resources.email_template import EmailTemplateKind
from resources.user import UserKind


@pytest.mark.asyncio
class TestResolve:
    async def test_no_match(self, mock_client, user_spec):
        kind = UserKind()
        found = await resolve(kind, mock_client, kind.validate(user_spec))
        assert found is None
        mock_client.users.get_by_login.assert_awaited_once_with("jdoe")

    async def test_match_in_same_organization(self, mock_client, user_spec):
        kind = UserKind()
        mock_client.users.get_by_login.return_value = ok_outcome(
            "GetUserByLoginID", remote_user(user_id="user-42")
        )
        found = await resolve(kind, mock_client, kind.validate(user_spec))
        assert found["id"] == "user-42"

    async def test_match_in_other_organization(self, mock_client, user_spec):
        kind = UserKind()
        mock_client.users.get_by_login.return_value = ok_outcome(
            "GetUserByLoginID", remote_user(org="org-2")
        )
        with pytest.raises(ConflictError) as exc_info:
            await resolve(kind, mock_client, kind.validate(user_spec), "users/jdoe")
        assert "different IAM organization" in str(exc_info.value)
        assert exc_info.value.resource_key == "users/jdoe"

    async def test_lookup_failure(self, mock_client, user_spec):
        kind = UserKind()
        mock_client.users.get_by_login.return_value = error_outcome(
            "GetUserByLoginID", 503
        )
        with pytest.raises(TransportFailure) as exc_info:
            await resolve(kind, mock_client, kind.validate(user_spec))
        assert exc_info.value.status_code == 503

    async def test_explicit_not_found(self, mock_client, user_spec):
        kind = UserKind()
        mock_client.users.get_by_login.return_value = empty_outcome(
            "GetUserByLoginID"
        )
        assert await resolve(kind, mock_client, kind.validate(user_spec)) is None

    async def test_kind_without_natural_key(self, mock_client, template_spec):
        kind = EmailTemplateKind()
        found = await resolve(kind, mock_client, kind.validate(template_spec))
        assert found is None
        mock_client.email_templates.get_by_login.assert_not_awaited()

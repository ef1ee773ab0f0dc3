"""Unit tests for the resources package - kinds and registry."""

import base64
import pytest
from unittest.mock import MagicMock, patch

from conftest import ok_outcome, remote_user
from db import ResourceHandle
from errors import InvalidDescriptor
from resources.base import Diagnostic, Outcome, ReconcileResult, Severity
from resources.email_template import EmailTemplateKind, encode_message
from resources.registry import (
    KindRegistry,
    get_registry,
    register_builtin_kinds,
    reset_registry,
)
from resources.user import UserKind


class TestReconcileResult:
    def test_success_with_warnings(self):
        result = ReconcileResult(
            Outcome.DELETE_UNEXPECTED_STATUS,
            diagnostics=[Diagnostic.warning("odd")],
        )
        assert result.success
        assert result.warnings[0].severity == Severity.WARNING
        assert result.fatal == []

    def test_fatal(self):
        result = ReconcileResult(Outcome.FAILED, diagnostics=[Diagnostic.fatal("x")])
        assert not result.success

    def test_absent(self):
        assert ReconcileResult(Outcome.DRIFTED_ABSENT).absent


class TestUserKind:
    """Tests for the iam_user kind."""

    def test_validate_normalizes(self, user_spec):
        descriptor = UserKind().validate(user_spec)
        assert descriptor["login"] == "jdoe"
        assert descriptor["mobile"] == ""
        assert descriptor["preferred_language"] == ""
        assert descriptor["username"] == ""

    def test_validate_username_fallback(self, user_spec):
        del user_spec["login"]
        user_spec["username"] = "legacy"
        descriptor = UserKind().validate(user_spec)
        assert descriptor["login"] == "legacy"

    def test_validate_requires_login(self, user_spec):
        del user_spec["login"]
        with pytest.raises(InvalidDescriptor) as exc_info:
            UserKind().validate(user_spec)
        assert "login is required" in str(exc_info.value)

    def test_validate_rejects_bad_email(self, user_spec):
        user_spec["email"] = "not-an-email"
        with pytest.raises(InvalidDescriptor) as exc_info:
            UserKind().validate(user_spec)
        assert "email" in str(exc_info.value)

    def test_validate_rejects_missing_fields(self):
        with pytest.raises(InvalidDescriptor) as exc_info:
            UserKind().validate({"login": "jdoe"})
        message = str(exc_info.value)
        assert "first_name" in message
        assert "organization_id" in message

    def test_natural_key(self, user_spec):
        kind = UserKind()
        assert kind.natural_key(kind.validate(user_spec)) == "jdoe"

    def test_attributes_from_remote(self):
        record = remote_user(mobile="+31600000000", language="nl-NL")
        attributes = UserKind().attributes_from_remote(record)
        assert attributes == {
            "login": "jdoe",
            "first_name": "John",
            "last_name": "Doe",
            "email": "jdoe@example.com",
            "mobile": "+31600000000",
            "organization_id": "org-1",
            "preferred_language": "nl-NL",
            "preferred_communication_channel": "email",
        }

    def test_update_calls_order(self):
        calls = UserKind().update_calls({"first_name", "login", "email"})
        assert [c.name for c in calls] == ["change_login", "update_profile"]
        assert calls[1].attributes == frozenset({"first_name", "email"})

    def test_update_calls_login_only(self):
        calls = UserKind().update_calls({"login"})
        assert [c.name for c in calls] == ["change_login"]

    @pytest.mark.asyncio
    async def test_create_builds_person(self, mock_client, user_spec):
        kind = UserKind()
        mock_client.users.create.return_value = ok_outcome(
            "CreateUser", {"id": "user-1"}, 201
        )

        await kind.create(mock_client, kind.validate(user_spec))

        person = mock_client.users.create.call_args[0][0]
        assert person["resourceType"] == "Person"
        assert person["loginId"] == "jdoe"
        assert person["name"] == {"family": "Doe", "given": "John"}
        assert person["telecom"] == [
            {"system": "email", "value": "jdoe@example.com"}
        ]
        assert person["managingOrganization"] == "org-1"
        assert person["isAgeValidated"] == "true"
        assert person["password"] == "s3cret!"
        assert "preferredLanguage" not in person

    @pytest.mark.asyncio
    async def test_delete_probes_first(self, mock_client):
        kind = UserKind()
        mock_client.users.get_by_id.return_value = ok_outcome(
            "GetUserByID", remote_user()
        )
        mock_client.users.delete.return_value = ok_outcome("DeleteUser", None, 204)

        outcome = await kind.delete(mock_client, ResourceHandle("user-1", "org-1"))

        assert outcome.status_code == 204
        mock_client.users.delete.assert_awaited_once_with("user-1")


class TestEmailTemplateKind:
    """Tests for the iam_email_template kind."""

    def test_validate_applies_defaults(self, template_spec):
        descriptor = EmailTemplateKind().validate(template_spec)
        assert descriptor["format"] == "HTML"
        assert descriptor["subject"] == "default"
        assert descriptor["from"] == ""

    def test_validate_accepts_from_alias(self, template_spec):
        template_spec["from"] = "noreply@example.com"
        descriptor = EmailTemplateKind().validate(template_spec)
        assert descriptor["from"] == "noreply@example.com"

    def test_every_declared_attribute_is_immutable(self, template_spec):
        kind = EmailTemplateKind()
        descriptor = kind.validate(template_spec)
        assert set(descriptor) <= kind.immutable_attributes

    def test_encode_message(self):
        assert encode_message("Hello") == base64.b64encode(b"Hello").decode()

    def test_created_attributes(self, template_spec):
        kind = EmailTemplateKind()
        attributes = kind.created_attributes({"id": "t-1"}, template_spec)
        assert attributes == {"message_base64": encode_message("Hello {{name}}")}

    def test_attributes_from_remote_skips_default_locale(self):
        record = {
            "id": "t-1",
            "type": "ACCOUNT_VERIFICATION",
            "format": "HTML",
            "subject": "default",
            "locale": "default",
            "managingOrganization": "org-1",
        }
        attributes = EmailTemplateKind().attributes_from_remote(record)
        assert "locale" not in attributes
        assert "message" not in attributes
        assert attributes["managing_organization"] == "org-1"

    @pytest.mark.asyncio
    async def test_create_encodes_message_and_drops_empty(
        self, mock_client, template_spec
    ):
        kind = EmailTemplateKind()
        mock_client.email_templates.create.return_value = ok_outcome(
            "CreateTemplate", {"id": "t-1"}, 201
        )

        await kind.create(mock_client, kind.validate(template_spec))

        body = mock_client.email_templates.create.call_args[0][0]
        assert body == {
            "type": "ACCOUNT_VERIFICATION",
            "format": "HTML",
            "subject": "default",
            "message": encode_message("Hello {{name}}"),
            "managingOrganization": "org-1",
        }


class TestKindRegistry:
    """Tests for KindRegistry and the global helpers."""

    def setup_method(self):
        reset_registry()

    def teardown_method(self):
        reset_registry()

    def test_register_and_get(self):
        registry = KindRegistry()
        registry.register(UserKind)
        assert registry.has("iam_user")
        assert isinstance(registry.get("iam_user"), UserKind)
        assert registry.get("iam_user") is registry.get("iam_user")

    def test_get_unknown(self):
        registry = KindRegistry()
        registry.register(UserKind)
        with pytest.raises(ValueError) as exc_info:
            registry.get("iam_group")
        assert "Available kinds: iam_user" in str(exc_info.value)

    def test_singleton(self):
        assert get_registry() is get_registry()

    def test_register_builtin_kinds(self):
        with patch("resources.registry.entry_points", return_value=[]):
            registry = register_builtin_kinds()
        assert registry.list_kinds() == ["iam_email_template", "iam_user"]

    def test_broken_entry_point_is_skipped(self):
        broken = MagicMock()
        broken.name = "broken"
        broken.load.side_effect = ImportError("missing module")
        with patch("resources.registry.entry_points", return_value=[broken]):
            registry = register_builtin_kinds()
        assert registry.list_kinds() == ["iam_email_template", "iam_user"]

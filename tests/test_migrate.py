"""Unit tests for migrate.py - State schema migrations."""

import pytest

import migrate
from db import ResourceHandle, StateRecord
from migrate import (
    EMAIL_TEMPLATE_KIND,
    USER_KIND,
    current_version,
    migrate_attributes,
    needs_migration,
    upgrader,
)


def user_record(attributes, version=0):
    return StateRecord(
        key="users/jdoe",
        kind=USER_KIND,
        handle=ResourceHandle("user-1", "org-1"),
        attributes=attributes,
        schema_version=version,
    )


class TestRegistry:
    """Tests for upgrader registration."""

    def test_current_versions(self):
        assert current_version(USER_KIND) == 2
        assert current_version(EMAIL_TEMPLATE_KIND) == 1

    def test_unknown_kind_is_version_zero(self):
        assert current_version("no_such_kind") == 0

    def test_duplicate_upgrader_rejected(self):
        with pytest.raises(ValueError) as exc_info:

            @upgrader(USER_KIND, 0)
            def _again(attributes):
                return attributes

        assert "already registered" in str(exc_info.value)

    def test_new_kind_registration(self, monkeypatch):
        monkeypatch.setattr(migrate, "_UPGRADERS", {})

        @upgrader("widget", 0)
        def _widget(attributes):
            attributes["size"] = attributes.pop("width", None)
            return attributes

        attrs, version = migrate_attributes("widget", {"width": 3}, 0)
        assert attrs == {"size": 3}
        assert version == 1


class TestUserMigration:
    """Tests for iam_user upgrades."""

    def test_username_becomes_login_and_email(self):
        record = user_record({"username": "jdoe@example.com", "organization_id": "o"})

        upgraded = migrate.migrate(record)

        assert upgraded.schema_version == 2
        assert upgraded.attributes["login"] == "jdoe@example.com"
        assert upgraded.attributes["email"] == "jdoe@example.com"
        assert upgraded.attributes["mobile"] == ""
        assert upgraded.attributes["preferred_language"] == ""
        assert upgraded.handle == record.handle

    def test_plain_username_does_not_fill_email(self):
        record = user_record({"username": "jdoe"})
        upgraded = migrate.migrate(record)
        assert upgraded.attributes["login"] == "jdoe"
        assert "email" not in upgraded.attributes

    def test_existing_login_is_kept(self):
        record = user_record({"username": "old", "login": "new"})
        upgraded = migrate.migrate(record)
        assert upgraded.attributes["login"] == "new"

    def test_input_not_mutated(self):
        attributes = {"username": "jdoe"}
        migrate.migrate(user_record(attributes))
        assert attributes == {"username": "jdoe"}

    def test_idempotent(self):
        once = migrate.migrate(user_record({"username": "jdoe@example.com"}))
        twice = migrate.migrate(once)
        assert twice == once

    def test_explicit_from_version(self):
        record = user_record({"login": "jdoe", "mobile": None}, version=0)
        upgraded = migrate.migrate(record, from_version=1)
        assert upgraded.attributes == {
            "login": "jdoe",
            "mobile": "",
            "preferred_language": "",
            "preferred_communication_channel": "",
        }
        assert upgraded.schema_version == 2

    def test_newer_record_left_untouched(self):
        record = user_record({"login": "jdoe"}, version=7)
        upgraded = migrate.migrate(record)
        assert upgraded.attributes == {"login": "jdoe"}
        assert upgraded.schema_version == 7


class TestTemplateMigration:
    """Tests for iam_email_template upgrades."""

    def test_defaults_filled(self):
        attrs, version = migrate_attributes(
            EMAIL_TEMPLATE_KIND, {"type": "WELCOME", "format": ""}, 0
        )
        assert attrs == {"type": "WELCOME", "format": "HTML", "subject": "default"}
        assert version == 1

    def test_declared_values_kept(self):
        attrs, _ = migrate_attributes(
            EMAIL_TEMPLATE_KIND, {"format": "TEXT", "subject": "Hi"}, 0
        )
        assert attrs == {"format": "TEXT", "subject": "Hi"}


class TestNeedsMigration:
    def test_old_record(self):
        assert needs_migration(user_record({}, version=1))

    def test_current_record(self):
        assert not needs_migration(user_record({}, version=2))

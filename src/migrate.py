"""
State schema migrator.

Upgrades persisted state records written under an older attribute schema.
Upgraders are registered per resource kind and source version and applied in
order, forward-only, until the record reaches the kind's current version.
Every upgrader only fills values the newer schema does not hold yet, so
migrating an already-current record is a no-op.
"""

import dataclasses
import logging
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

USER_KIND = "iam_user"
EMAIL_TEMPLATE_KIND = "iam_email_template"

Upgrader = Callable[[Dict[str, Any]], Dict[str, Any]]

_UPGRADERS: Dict[str, Dict[int, Upgrader]] = {}


def upgrader(kind: str, from_version: int) -> Callable[[Upgrader], Upgrader]:
    """Register an upgrader taking attributes of `kind` from `from_version`."""

    def decorator(fn: Upgrader) -> Upgrader:
        versions = _UPGRADERS.setdefault(kind, {})
        if from_version in versions:
            raise ValueError(
                f"Upgrader for {kind} v{from_version} is already registered"
            )
        versions[from_version] = fn
        return fn

    return decorator


def current_version(kind: str) -> int:
    """The schema version records of `kind` are written with."""
    versions = _UPGRADERS.get(kind)
    if not versions:
        return 0
    return max(versions) + 1


def _fill(attributes: Dict[str, Any], name: str, value: Any) -> None:
    if attributes.get(name) in (None, "") and value not in (None, ""):
        attributes[name] = value


def migrate_attributes(
    kind: str, attributes: Dict[str, Any], from_version: int
) -> Tuple[Dict[str, Any], int]:
    """
    Apply every upgrader for `kind` from `from_version` to current.

    Returns:
        Tuple of (upgraded attributes, resulting version). The input dict is
        never mutated.
    """
    target = current_version(kind)
    upgraded = dict(attributes)

    if from_version > target:
        logger.warning(
            f"State for {kind} has schema version {from_version}, newer than "
            f"the supported version {target}; leaving it untouched"
        )
        return upgraded, from_version

    version = max(from_version, 0)
    while version < target:
        step = _UPGRADERS[kind].get(version)
        if step is not None:
            upgraded = step(upgraded)
            logger.debug(f"Upgraded {kind} state from v{version} to v{version + 1}")
        version += 1

    return upgraded, version


def migrate(record, from_version: Optional[int] = None):
    """
    Upgrade a persisted state record.

    Args:
        record: A db.StateRecord.
        from_version: Schema version the record was written with. Defaults to
            the record's own schema_version tag.

    Returns:
        A new StateRecord at the current schema version.
    """
    if from_version is None:
        from_version = record.schema_version

    attributes, version = migrate_attributes(
        record.kind, record.attributes, from_version
    )
    if version > current_version(record.kind):
        version = record.schema_version
    return dataclasses.replace(
        record, attributes=attributes, schema_version=version
    )


def needs_migration(record) -> bool:
    """Whether a record was written under an older schema."""
    return record.schema_version < current_version(record.kind)


# ==================== iam_user ====================


@upgrader(USER_KIND, 0)
def _user_username_to_login(attributes: Dict[str, Any]) -> Dict[str, Any]:
    """The deprecated username field held the login, and historically the email."""
    username = attributes.get("username")
    _fill(attributes, "login", username)
    if isinstance(username, str) and "@" in username:
        _fill(attributes, "email", username)
    return attributes


@upgrader(USER_KIND, 1)
def _user_optional_profile_fields(attributes: Dict[str, Any]) -> Dict[str, Any]:
    """Optional profile fields are stored as empty strings, never missing."""
    for name in ("mobile", "preferred_language", "preferred_communication_channel"):
        if attributes.get(name) is None:
            attributes[name] = ""
    return attributes


# ==================== iam_email_template ====================


@upgrader(EMAIL_TEMPLATE_KIND, 0)
def _template_defaults(attributes: Dict[str, Any]) -> Dict[str, Any]:
    """Format and subject gained explicit defaults."""
    _fill(attributes, "format", "HTML")
    _fill(attributes, "subject", "default")
    return attributes

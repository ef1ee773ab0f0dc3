"""
Natural-Key Resolver.

Before creating a resource that has a caller-assignable unique key, look the
key up on the remote service so an existing object can be adopted instead of
duplicated.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from classifier import CallKind, classify
from errors import ConflictError, TransportFailure
from resources.base import ResourceKind

logger = logging.getLogger(__name__)


async def resolve(
    kind: ResourceKind,
    client,
    declared: Mapping[str, Any],
    resource_key: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Find an existing remote record matching the declared natural key.

    Args:
        kind: Resource kind of the descriptor.
        client: Authenticated IAM client.
        declared: Validated declared descriptor.
        resource_key: Local key, used only for error context.

    Returns:
        The matching remote record, or None if there is none.

    Raises:
        ConflictError: If the match is managed by a different organization.
        TransportFailure: If the lookup failed.
    """
    key = kind.natural_key(declared)
    if not key:
        return None

    outcome = await kind.lookup(client, key)
    verdict = classify(CallKind.LOOKUP, outcome)

    if verdict.is_empty:
        logger.debug(f"No existing {kind.name} found for '{key}'")
        return None
    if not verdict.is_success:
        raise TransportFailure(
            f"Looking up {kind.name} '{key}' failed: {verdict.detail}",
            operation=outcome.operation,
            resource_key=resource_key,
            status_code=verdict.status_code,
        )

    record = outcome.record
    owner = kind.owner_of(record)
    wanted = kind.managing_organization(declared)
    if owner != wanted:
        raise ConflictError(
            f"{kind.name} '{key}' already exists but is managed by a different "
            f"IAM organization ('{owner}', expected '{wanted}')",
            operation=outcome.operation,
            resource_key=resource_key,
        )

    logger.info(f"Found existing {kind.name} '{key}' with ID {record.get('id')}")
    return record

"""
IAM Client - authenticated access to the identity service REST API.

Every call returns a CallOutcome describing what happened (record, HTTP status,
structured error) instead of raising, so that callers can classify absence,
conflicts and transport failures explicitly.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from classifier import CallOutcome, ErrorKind, RemoteError

logger = logging.getLogger(__name__)

IDENTITY_PATH = "/authorize/identity"
LEGACY_USERS_PATH = "/security/users"


class IAMClient:
    """
    Client for the identity service.

    Use as an async context manager, or call close() when done. A session
    passed in by the caller is not closed by the client.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str = "",
        timeout: int = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self.users = UsersService(self)
        self.email_templates = EmailTemplatesService(self)

    async def __aenter__(self) -> "IAMClient":
        self._get_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_headers(self, api_version: str) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Api-Version": api_version,
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def request(
        self,
        operation: str,
        method: str,
        path: str,
        api_version: str = "1",
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> CallOutcome:
        """
        Issue one HTTP request and describe its result.

        Args:
            operation: Name of the logical operation, used in diagnostics.
            method: HTTP method.
            path: Path relative to the base URL.
            api_version: Value of the Api-Version header.
            body: Optional JSON body.
            params: Optional query parameters.

        Returns:
            CallOutcome for the request.
        """
        url = f"{self.base_url}{path}"
        session = self._get_session()

        try:
            async with session.request(
                method,
                url,
                headers=self._get_headers(api_version),
                json=body,
                params=params,
            ) as response:
                status = response.status
                text = await response.text()
                location = response.headers.get("Location")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"{operation}: {method} {url} failed: {e!r}")
            return CallOutcome(
                operation=operation,
                error=RemoteError(ErrorKind.TRANSPORT, f"{type(e).__name__}: {e}"),
            )

        logger.debug(f"{operation}: {method} {url} -> {status}")
        return _to_outcome(operation, status, _parse_body(text), location)


def _parse_body(text: str) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return {"message": text}
    return parsed if isinstance(parsed, dict) else {"items": parsed}


def _issues(body: Optional[Dict[str, Any]]) -> list:
    if not body:
        return []
    issues = body.get("issue")
    return issues if isinstance(issues, list) else []


def _to_outcome(
    operation: str,
    status: int,
    body: Optional[Dict[str, Any]],
    location: Optional[str] = None,
) -> CallOutcome:
    """Map an HTTP status and body onto a CallOutcome."""
    if status == 404:
        return CallOutcome(
            operation=operation,
            status_code=status,
            error=RemoteError(ErrorKind.EMPTY_RESULTS, "resource not found"),
        )

    if status >= 400:
        issues = _issues(body)
        if issues:
            message = "; ".join(
                issue.get("diagnostics") or issue.get("code") or "error"
                for issue in issues
            )
            error = RemoteError(ErrorKind.DOMAIN, message, issues)
        elif body and (body.get("responseMessage") or body.get("error")):
            message = body.get("responseMessage") or body.get("error")
            error = RemoteError(ErrorKind.DOMAIN, str(message))
        else:
            error = RemoteError(ErrorKind.HTTP, f"unexpected HTTP status {status}")
        return CallOutcome(operation=operation, status_code=status, error=error)

    if not 200 <= status < 300:
        return CallOutcome(
            operation=operation,
            status_code=status,
            error=RemoteError(ErrorKind.HTTP, f"unexpected HTTP status {status}"),
        )

    record = dict(body) if body else None
    if location and not (record and record.get("id")):
        record = dict(record or {})
        record["id"] = location.rstrip("/").rsplit("/", 1)[-1]
    return CallOutcome(operation=operation, status_code=status, record=record, ok=True)


def _first_entry(outcome: CallOutcome) -> CallOutcome:
    """Unwrap a search bundle to its first resource, or report empty results."""
    if outcome.failed:
        return outcome
    bundle = outcome.record or {}
    entries = bundle.get("entry") or []
    if bundle.get("total", len(entries)) == 0 or not entries:
        return CallOutcome(
            operation=outcome.operation,
            status_code=outcome.status_code,
            error=RemoteError(ErrorKind.EMPTY_RESULTS, "search returned no results"),
        )
    resource = entries[0].get("resource", entries[0])
    return CallOutcome(
        operation=outcome.operation,
        status_code=outcome.status_code,
        record=resource,
        ok=True,
    )


class UsersService:
    """User operations."""

    def __init__(self, client: IAMClient):
        self.client = client

    async def get_by_login(self, login: str) -> CallOutcome:
        outcome = await self.client.request(
            "GetUserByLoginID",
            "GET",
            f"{IDENTITY_PATH}/User",
            api_version="3",
            params={"loginId": login},
        )
        return _first_entry(outcome)

    async def get_by_id(self, user_id: str) -> CallOutcome:
        outcome = await self.client.request(
            "GetUserByID",
            "GET",
            f"{IDENTITY_PATH}/User",
            api_version="3",
            params={"_id": user_id},
        )
        return _first_entry(outcome)

    async def create(self, person: Dict[str, Any]) -> CallOutcome:
        return await self.client.request(
            "CreateUser",
            "POST",
            f"{IDENTITY_PATH}/User",
            api_version="3",
            body=person,
        )

    async def change_login(self, user_id: str, login: str) -> CallOutcome:
        return await self.client.request(
            "ChangeLoginID",
            "POST",
            f"{IDENTITY_PATH}/User/{user_id}/$change-loginid",
            api_version="1",
            body={"loginId": login},
        )

    async def update_profile(
        self, user_id: str, changes: Dict[str, Any]
    ) -> CallOutcome:
        """
        Update profile fields through the legacy users API.

        The legacy API only accepts a complete profile, so the current profile
        is fetched first and the changes are overlaid onto it.
        """
        current = await self.client.request(
            "LegacyGetUserByUUID",
            "GET",
            f"{LEGACY_USERS_PATH}/{user_id}",
            api_version="1",
        )
        if current.failed:
            return current

        body = current.record or {}
        profile = dict((body.get("exchange") or {}).get("profile") or body)
        contact = dict(profile.get("contact") or {})
        for name, value in changes.items():
            if name in ("emailAddress", "mobilePhone"):
                contact[name] = value
            else:
                profile[name] = value
        profile["contact"] = contact
        # The legacy API rejects an empty middle name.
        if not profile.get("middleName"):
            profile["middleName"] = " "
        profile["id"] = user_id

        return await self.client.request(
            "LegacyUpdateUser",
            "PUT",
            f"{LEGACY_USERS_PATH}/{user_id}",
            api_version="1",
            body=profile,
        )

    async def delete(self, user_id: str) -> CallOutcome:
        return await self.client.request(
            "DeleteUser",
            "DELETE",
            f"{IDENTITY_PATH}/User/{user_id}",
            api_version="1",
        )


class EmailTemplatesService:
    """Email template operations."""

    def __init__(self, client: IAMClient):
        self.client = client

    async def create(self, template: Dict[str, Any]) -> CallOutcome:
        return await self.client.request(
            "CreateTemplate",
            "POST",
            f"{IDENTITY_PATH}/EmailTemplate",
            api_version="1",
            body=template,
        )

    async def get_by_id(self, template_id: str) -> CallOutcome:
        return await self.client.request(
            "GetTemplateByID",
            "GET",
            f"{IDENTITY_PATH}/EmailTemplate/{template_id}",
            api_version="1",
        )

    async def delete(self, template_id: str) -> CallOutcome:
        return await self.client.request(
            "DeleteTemplate",
            "DELETE",
            f"{IDENTITY_PATH}/EmailTemplate/{template_id}",
            api_version="1",
        )

"""
IAM user resource kind.

A person account identified by its login. The login is the natural key used
to adopt existing accounts; renaming it uses a dedicated call, while name,
email, mobile and preferences go through a single profile update.
"""

from typing import Any, Dict, List, Mapping, Optional, Set

from pydantic import BaseModel, Field, field_validator, model_validator

from classifier import CallOutcome
from db import ResourceHandle
from migrate import USER_KIND
from resources.base import ResourceKind, UpdateCall
from suppression import CaseInsensitive, EmptyMeansDefault, SuppressionRule

DEFAULT_PREFERRED_LANGUAGE = "en-US"
DEFAULT_COMMUNICATION_CHANNEL = "email"

PROFILE_ATTRIBUTES = frozenset(
    {
        "first_name",
        "last_name",
        "email",
        "mobile",
        "preferred_language",
        "preferred_communication_channel",
    }
)


class UserSpec(BaseModel):
    """Declared attributes of an IAM user."""

    login: str = ""
    username: str = Field(default="", description="Deprecated, use login")
    email: str
    password: str = Field(default="", repr=False)
    first_name: str
    last_name: str
    mobile: str = ""
    organization_id: str
    preferred_language: str = ""
    preferred_communication_channel: str = ""

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("email must be an email address")
        return v

    @field_validator("organization_id")
    @classmethod
    def validate_organization(cls, v: str) -> str:
        if not v:
            raise ValueError("organization_id cannot be empty")
        return v

    @model_validator(mode="after")
    def default_login(self) -> "UserSpec":
        if not self.login:
            self.login = self.username
        if not self.login:
            raise ValueError("login is required")
        return self


class UserKind(ResourceKind):
    """Reconciles IAM users."""

    declared_model = UserSpec
    immutable_attributes = frozenset({"organization_id"})
    write_only_attributes = frozenset({"password", "username"})
    unpropagated_attributes = {
        "password": (
            "password change not propagated",
            "changing the password after a user is created has no effect",
        ),
        "username": (
            "username change not propagated",
            "username is deprecated; change the login attribute instead",
        ),
    }

    @property
    def name(self) -> str:
        return USER_KIND

    def suppression_rules(self) -> Dict[str, List[SuppressionRule]]:
        return {
            "login": [CaseInsensitive()],
            "email": [CaseInsensitive()],
            "preferred_language": [EmptyMeansDefault(DEFAULT_PREFERRED_LANGUAGE)],
            "preferred_communication_channel": [
                EmptyMeansDefault(DEFAULT_COMMUNICATION_CHANNEL)
            ],
        }

    def natural_key(self, declared: Mapping[str, Any]) -> Optional[str]:
        return declared.get("login") or declared.get("username") or None

    def managing_organization(self, declared: Mapping[str, Any]) -> str:
        return declared.get("organization_id") or ""

    async def lookup(self, client, key: str) -> CallOutcome:
        return await client.users.get_by_login(key)

    async def create(self, client, declared: Mapping[str, Any]) -> CallOutcome:
        telecom = [{"system": "email", "value": declared["email"]}]
        if declared.get("mobile"):
            telecom.append({"system": "mobile", "value": declared["mobile"]})

        person: Dict[str, Any] = {
            "resourceType": "Person",
            "loginId": declared["login"],
            "name": {
                "family": declared["last_name"],
                "given": declared["first_name"],
            },
            "telecom": telecom,
            "managingOrganization": declared["organization_id"],
            "isAgeValidated": "true",
        }
        if declared.get("password"):
            person["password"] = declared["password"]
        if declared.get("preferred_language"):
            person["preferredLanguage"] = declared["preferred_language"]
        if declared.get("preferred_communication_channel"):
            person["preferredCommunicationChannel"] = declared[
                "preferred_communication_channel"
            ]

        return await client.users.create(person)

    async def read(self, client, handle: ResourceHandle) -> CallOutcome:
        return await client.users.get_by_id(handle.resource_id)

    def attributes_from_remote(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        name = record.get("name") or {}
        telecom = {
            entry.get("system"): entry.get("value")
            for entry in record.get("telecom") or []
        }
        attributes = {
            "login": record.get("loginId"),
            "first_name": name.get("given"),
            "last_name": name.get("family"),
            "email": record.get("emailAddress") or telecom.get("email"),
            "mobile": telecom.get("mobile"),
            "organization_id": record.get("managingOrganization"),
            "preferred_language": record.get("preferredLanguage") or "",
            "preferred_communication_channel": (
                record.get("preferredCommunicationChannel") or ""
            ),
        }
        return {k: v for k, v in attributes.items() if v is not None}

    def unpropagated_changes(self, changed: Set[str]) -> Set[str]:
        unpropagated = super().unpropagated_changes(changed)
        # A username change that moved the login is carried by the rename.
        if "login" in changed:
            unpropagated.discard("username")
        return unpropagated

    def update_calls(self, changed: Set[str]) -> List[UpdateCall]:
        # Rename and profile update are independent calls; rename is issued first.
        calls = []
        if "login" in changed:
            calls.append(UpdateCall("change_login", frozenset({"login"})))
        profile = PROFILE_ATTRIBUTES & changed
        if profile:
            calls.append(UpdateCall("update_profile", frozenset(profile)))
        return calls

    async def update(
        self,
        client,
        handle: ResourceHandle,
        call: UpdateCall,
        declared: Mapping[str, Any],
    ) -> CallOutcome:
        if call.name == "change_login":
            return await client.users.change_login(
                handle.resource_id, declared["login"]
            )
        if call.name == "update_profile":
            return await client.users.update_profile(
                handle.resource_id,
                {
                    "givenName": declared["first_name"],
                    "familyName": declared["last_name"],
                    "emailAddress": declared["email"],
                    "mobilePhone": declared.get("mobile") or "",
                    "preferredLanguage": declared.get("preferred_language") or "",
                    "preferredCommunicationChannel": (
                        declared.get("preferred_communication_channel") or ""
                    ),
                },
            )
        return await super().update(client, handle, call, declared)

    async def delete(self, client, handle: ResourceHandle) -> CallOutcome:
        # A user that can no longer be found counts as deleted.
        probe = await client.users.get_by_id(handle.resource_id)
        if probe.failed or not probe.record:
            return probe
        return await client.users.delete(probe.record.get("id") or handle.resource_id)

"""
IAM email template resource kind.

Templates cannot be modified once created; every attribute change replaces
the template. The message body is sent base64 encoded and never returned by
a read.
"""

import base64
from typing import Any, Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field

from classifier import CallOutcome
from db import ResourceHandle
from migrate import EMAIL_TEMPLATE_KIND
from resources.base import ResourceKind
from suppression import EmptyMeansDefault, SuppressionRule

DEFAULT_VALUE = "default"


class EmailTemplateSpec(BaseModel):
    """Declared attributes of an IAM email template."""

    model_config = ConfigDict(populate_by_name=True)

    managing_organization: str
    type: str
    from_: str = Field(default="", alias="from")
    format: str = "HTML"
    subject: str = DEFAULT_VALUE
    message: str
    locale: str = ""
    link: str = ""


def encode_message(message: str) -> str:
    return base64.b64encode(message.encode("utf-8")).decode("ascii")


class EmailTemplateKind(ResourceKind):
    """Reconciles IAM email templates."""

    declared_model = EmailTemplateSpec
    immutable_attributes = frozenset(
        {
            "managing_organization",
            "type",
            "from",
            "format",
            "subject",
            "message",
            "locale",
            "link",
        }
    )
    write_only_attributes = frozenset({"message"})
    computed_attributes = frozenset({"message_base64"})

    @property
    def name(self) -> str:
        return EMAIL_TEMPLATE_KIND

    def suppression_rules(self) -> Dict[str, List[SuppressionRule]]:
        return {
            "from": [EmptyMeansDefault(DEFAULT_VALUE)],
            "locale": [EmptyMeansDefault(DEFAULT_VALUE)],
            "link": [EmptyMeansDefault(DEFAULT_VALUE)],
        }

    def managing_organization(self, declared: Mapping[str, Any]) -> str:
        return declared.get("managing_organization") or ""

    async def create(self, client, declared: Mapping[str, Any]) -> CallOutcome:
        template = {
            "type": declared["type"],
            "format": declared.get("format") or "HTML",
            "subject": declared.get("subject") or DEFAULT_VALUE,
            "message": encode_message(declared["message"]),
            "link": declared.get("link") or "",
            "locale": declared.get("locale") or "",
            "from": declared.get("from") or "",
            "managingOrganization": declared["managing_organization"],
        }
        template = {k: v for k, v in template.items() if v != ""}
        return await client.email_templates.create(template)

    def created_attributes(
        self, record: Mapping[str, Any], declared: Mapping[str, Any]
    ) -> Dict[str, Any]:
        return {"message_base64": encode_message(declared["message"])}

    async def read(self, client, handle: ResourceHandle) -> CallOutcome:
        return await client.email_templates.get_by_id(handle.resource_id)

    def attributes_from_remote(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        attributes = {
            "type": record.get("type"),
            "format": record.get("format"),
            "subject": record.get("subject"),
            "from": record.get("from"),
            "link": record.get("link"),
            "managing_organization": record.get("managingOrganization"),
        }
        # The service reports an unset locale as "default".
        if record.get("locale") and record.get("locale") != DEFAULT_VALUE:
            attributes["locale"] = record["locale"]
        return {k: v for k, v in attributes.items() if v is not None}

    async def delete(self, client, handle: ResourceHandle) -> CallOutcome:
        return await client.email_templates.delete(handle.resource_id)

"""Read the authenticated payload of an LTI 1.x launch."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
import ssl
from typing import Any, Iterable, Mapping
from urllib.parse import unquote

from .content import ContentExtension
from .errors import LTIConfigurationError
from .oauth_signature import HMACSHA1Signer
from .outcomes import OutcomeService


logger = logging.getLogger(__name__)


BASIC_LAUNCH_MESSAGE = "basic-lti-launch-request"


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item for item in value.split(",") if item]


@dataclass
class LaunchContext:
    """Launch parameters stripped of their ``oauth_*`` fields.

    Role flags accept the short form (``Instructor``) as well as the
    ``urn:lti:role:ims/lis/``, ``urn:lti:sysrole:ims/lis/`` and
    ``urn:lti:instrole:ims/lis/`` prefixed forms, with an optional sub-role
    suffix (``Instructor/Lecturer``).
    """

    body: dict[str, Any]
    outcome_service: OutcomeService | None = None
    ext_content: ContentExtension | None = None
    roles: list[str] = field(default_factory=list)

    @classmethod
    def from_body(
        cls,
        body: Mapping[str, Any] | None,
        *,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        signer: HMACSHA1Signer | None = None,
        outcome_timeout: float | None = None,
        default_result_data_types: Iterable[str] = (),
        outcome_verify: bool | ssl.SSLContext = True,
    ) -> "LaunchContext":
        params = {key: value for key, value in (body or {}).items() if not key.startswith("oauth_")}

        roles = params.get("roles") or []
        if isinstance(roles, str):
            roles = [role.strip() for role in roles.split(",")]
            params["roles"] = roles

        outcome_service = None
        service_url = params.get("lis_outcome_service_url")
        source_did = params.get("lis_result_sourcedid")
        if service_url and source_did and consumer_key is not None and consumer_secret is not None:
            try:
                outcome_service = OutcomeService(
                    consumer_key,
                    consumer_secret,
                    service_url,
                    source_did,
                    result_data_types=_split_csv(params.get("ext_outcome_data_values_accepted"))
                    or list(default_result_data_types),
                    signer=signer,
                    timeout=outcome_timeout,
                    verify=outcome_verify,
                )
            except LTIConfigurationError as exc:
                logger.info("Service de résultats ignoré (%s): %s", service_url, exc)

        ext_content = ContentExtension(params) if params.get("ext_content_return_types") else None

        return cls(body=params, outcome_service=outcome_service, ext_content=ext_content, roles=list(roles))

    def has_role(self, role: str) -> bool:
        pattern = re.compile(
            rf"^(urn:lti:(sys|inst)?role:ims/lis/)?{re.escape(role)}(/.+)?$",
            re.IGNORECASE,
        )
        return any(isinstance(item, str) and pattern.match(item) for item in self.roles)

    def _has_any_role(self, *roles: str) -> bool:
        return any(self.has_role(role) for role in roles)

    @property
    def admin(self) -> bool:
        return self.has_role("Administrator")

    @property
    def alumni(self) -> bool:
        return self.has_role("Alumni")

    @property
    def content_developer(self) -> bool:
        return self.has_role("ContentDeveloper")

    @property
    def guest(self) -> bool:
        return self.has_role("Guest")

    @property
    def instructor(self) -> bool:
        return self._has_any_role("Instructor", "Faculty", "Staff")

    @property
    def manager(self) -> bool:
        return self.has_role("Manager")

    @property
    def member(self) -> bool:
        return self.has_role("Member")

    @property
    def mentor(self) -> bool:
        return self.has_role("Mentor")

    @property
    def none(self) -> bool:
        return self.has_role("None")

    @property
    def observer(self) -> bool:
        return self.has_role("Observer")

    @property
    def other(self) -> bool:
        return self.has_role("Other")

    @property
    def prospective_student(self) -> bool:
        return self.has_role("ProspectiveStudent")

    @property
    def student(self) -> bool:
        return self._has_any_role("Learner", "Student")

    @property
    def ta(self) -> bool:
        return self.has_role("TeachingAssistant")

    @property
    def launch_request(self) -> bool:
        return self.body.get("lti_message_type") == BASIC_LAUNCH_MESSAGE

    @property
    def username(self) -> str:
        return (
            self.body.get("lis_person_name_given")
            or self.body.get("lis_person_name_family")
            or self.body.get("lis_person_name_full")
            or ""
        )

    @property
    def user_id(self) -> str | None:
        return self.body.get("user_id")

    @property
    def mentor_user_ids(self) -> list[str]:
        raw = self.body.get("role_scope_mentor")
        if not isinstance(raw, str):
            return []
        return [unquote(item) for item in raw.split(",")]

    @property
    def context_id(self) -> str | None:
        return self.body.get("context_id")

    @property
    def context_label(self) -> str | None:
        return self.body.get("context_label")

    @property
    def context_title(self) -> str | None:
        return self.body.get("context_title")

    def summary(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "roles": self.roles,
            "instructor": self.instructor,
            "student": self.student,
            "context": {
                "id": self.context_id,
                "label": self.context_label,
                "title": self.context_title,
            },
            "launchRequest": self.launch_request,
            "outcomeService": self.outcome_service is not None,
            "contentExtension": self.ext_content is not None,
        }


__all__ = ["BASIC_LAUNCH_MESSAGE", "LaunchContext"]

"""Recipient directory clients.

The user directory belongs to the CRUD layer. The engine only asks it to
expand a recipient reference (a user id, a role, a department, or
"all stakeholders" of a deadline) into addressable people.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from app.core.config import Settings
from app.core.exceptions import RecipientResolutionFailed
from app.core.retry import retry_with_backoff
from app.schemas.enums import RecipientType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    """One addressable person.

    Attributes:
        id: Directory user id
        name: Display name
        contacts: Address per channel (e.g. {"email": ..., "sms": ...})
    """

    id: str
    name: str
    contacts: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipient":
        contacts = data.get("contacts") or data.get("contact_info") or {}
        return cls(id=str(data["id"]), name=data.get("name", str(data["id"])), contacts=dict(contacts))


class RecipientDirectory(ABC):
    """Expands recipient references into concrete recipients."""

    @abstractmethod
    async def resolve_recipients(self, recipient_type: RecipientType, ref: str) -> list[Recipient]:
        """Return the people behind ``ref``.

        Raises:
            RecipientResolutionFailed: lookup failed or ``ref`` is unknown
        """


class StaticRecipientDirectory(RecipientDirectory):
    """In-memory directory, optionally loaded from a JSON file.

    File layout::

        {
          "users": [{"id": "u1", "name": "...", "contacts": {"email": "..."}}],
          "roles": {"compliance_officer": ["u1"]},
          "departments": {"compliance": ["u1", "u2"]},
          "all_stakeholders": ["u1", "u2", "u3"]
        }
    """

    def __init__(
        self,
        users: list[Recipient] | None = None,
        roles: dict[str, list[str]] | None = None,
        departments: dict[str, list[str]] | None = None,
        all_stakeholders: list[str] | None = None,
    ) -> None:
        self._users = {user.id: user for user in users or []}
        self._roles = roles or {}
        self._departments = departments or {}
        self._all = all_stakeholders

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticRecipientDirectory":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(
            users=[Recipient.from_dict(item) for item in data.get("users", [])],
            roles=data.get("roles", {}),
            departments=data.get("departments", {}),
            all_stakeholders=data.get("all_stakeholders"),
        )

    async def resolve_recipients(self, recipient_type: RecipientType, ref: str) -> list[Recipient]:
        recipient_type = RecipientType(recipient_type)

        if recipient_type == RecipientType.INDIVIDUAL:
            user_ids = [ref]
        elif recipient_type == RecipientType.ROLE:
            user_ids = self._roles.get(ref)
        elif recipient_type == RecipientType.DEPARTMENT:
            user_ids = self._departments.get(ref)
        else:
            user_ids = self._all if self._all is not None else list(self._users)

        if user_ids is None:
            raise RecipientResolutionFailed(
                f"Unknown {recipient_type.value} '{ref}'",
                recipient_type=recipient_type.value,
                ref=ref,
            )

        missing = [user_id for user_id in user_ids if user_id not in self._users]
        if missing:
            raise RecipientResolutionFailed(
                f"Unknown user(s) {missing} for {recipient_type.value} '{ref}'",
                recipient_type=recipient_type.value,
                ref=ref,
            )
        return [self._users[user_id] for user_id in user_ids]


class HttpRecipientDirectory(RecipientDirectory):
    """Directory served by the CRUD layer over HTTP.

    ``GET {base_url}/recipients?type=<recipient_type>&ref=<ref>`` returns a
    JSON list of ``{"id", "name", "contacts": {channel: address}}``.
    """

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    @retry_with_backoff()
    async def _fetch(self, recipient_type: str, ref: str) -> list[dict[str, Any]]:
        params = {"type": recipient_type, "ref": ref}
        url = f"{self.base_url}/recipients"
        if self._client is not None:
            response = await self._client.get(url, params=params)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    async def resolve_recipients(self, recipient_type: RecipientType, ref: str) -> list[Recipient]:
        recipient_type = RecipientType(recipient_type)
        try:
            rows = await self._fetch(recipient_type.value, ref)
            return [Recipient.from_dict(row) for row in rows]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning(f"Recipient lookup failed for {recipient_type.value} '{ref}': {type(e).__name__}")
            raise RecipientResolutionFailed(
                f"Directory lookup failed for {recipient_type.value} '{ref}'",
                recipient_type=recipient_type.value,
                ref=ref,
            ) from e


def build_directory(settings: Settings) -> RecipientDirectory:
    """Pick the directory implementation configured in settings."""
    if settings.recipient_directory_url:
        return HttpRecipientDirectory(settings.recipient_directory_url)
    if settings.recipient_directory_file:
        return StaticRecipientDirectory.from_file(settings.recipient_directory_file)
    logger.warning("No recipient directory configured; using an empty directory")
    return StaticRecipientDirectory()

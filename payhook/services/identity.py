"""
Identity provider client - sessions and organization membership live in the
auth service; this side only asks.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from payhook.errors import IdentityProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentitySession:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    session_id: Optional[str] = None
    active_organization_id: Optional[str] = None


@dataclass(frozen=True)
class OrganizationMember:
    user_id: str
    role: str
    email: Optional[str] = None
    name: Optional[str] = None


class HttpIdentityProvider:
    """Auth service over HTTP (better-auth style endpoints)."""

    def __init__(self, base_url: str, service_token: str = "", timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout = timeout

    async def get_session(self, headers: dict) -> Optional[IdentitySession]:
        """
        Resolve the caller's session from its cookie/authorization headers.
        Returns None when the caller is not signed in.
        """
        forward = {}
        lowered = {k.lower(): v for k, v in headers.items()}
        if lowered.get("cookie"):
            forward["cookie"] = lowered["cookie"]
        if lowered.get("authorization"):
            forward["authorization"] = lowered["authorization"]
        if not forward:
            return None

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/api/auth/get-session", headers=forward)
        except httpx.HTTPError as e:
            logger.error("Auth service unreachable: %s", str(e))
            raise IdentityProviderError("Auth service unreachable") from e

        if response.status_code in (401, 403, 404):
            return None
        if response.status_code >= 400:
            raise IdentityProviderError(f"Auth service returned {response.status_code}")

        data = response.json() if response.content else None
        if not data or not data.get("user"):
            return None

        user = data["user"]
        session = data.get("session") or {}
        return IdentitySession(
            user_id=user["id"],
            email=user.get("email"),
            name=user.get("name"),
            session_id=session.get("id"),
            active_organization_id=session.get("activeOrganizationId"),
        )

    async def list_members(self, organization_id: str) -> list[OrganizationMember]:
        """Members of an organization, called with the service token."""
        headers = {}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/api/auth/organization/list-members",
                    params={"organizationId": organization_id},
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Listing members for org %s failed: %s", organization_id[:8], str(e))
            raise IdentityProviderError("Could not list organization members") from e

        data = response.json()
        rows = data.get("members", []) if isinstance(data, dict) else data
        members = []
        for row in rows:
            user = row.get("user") or {}
            members.append(
                OrganizationMember(
                    user_id=row.get("userId") or user.get("id", ""),
                    role=row.get("role", "member"),
                    email=user.get("email"),
                    name=user.get("name"),
                )
            )
        return members

    async def is_member(self, organization_id: str, user_id: str) -> bool:
        members = await self.list_members(organization_id)
        return any(m.user_id == user_id for m in members)

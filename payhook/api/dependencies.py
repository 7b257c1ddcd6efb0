"""
Shared FastAPI dependencies - the process container and identity checks.
"""
import logging

from fastapi import Depends, HTTPException, Request

from payhook.container import Container
from payhook.errors import IdentityProviderError
from payhook.services.identity import IdentitySession

logger = logging.getLogger(__name__)


def get_container(request: Request) -> Container:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return container


async def get_current_session(
    request: Request,
    container: Container = Depends(get_container),
) -> IdentitySession:
    """Dependency that requires a signed-in caller (session from the auth service)."""
    try:
        session = await container.identity.get_session(dict(request.headers))
    except IdentityProviderError as e:
        logger.error("Session lookup failed: %s", str(e))
        raise HTTPException(status_code=503, detail="Auth service unavailable")
    if session is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return session


async def require_organization_member(
    organization_id: str,
    session: IdentitySession = Depends(get_current_session),
    container: Container = Depends(get_container),
) -> IdentitySession:
    """Dependency that requires the caller to belong to the organization in the path."""
    try:
        is_member = await container.identity.is_member(organization_id, session.user_id)
    except IdentityProviderError as e:
        logger.error("Membership check failed for org %s: %s", organization_id[:8], str(e))
        raise HTTPException(status_code=503, detail="Auth service unavailable")
    if not is_member:
        raise HTTPException(status_code=403, detail="Not a member of this organization")
    return session

"""
Organization event timeline - the domain events that concern one organization.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from payhook.api.dependencies import get_container, require_organization_member
from payhook.container import Container
from payhook.schemas.api_responses import DomainEventResponse, TimelineResponse
from payhook.services.identity import IdentitySession

router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.get("/organizations/{organization_id}", response_model=TimelineResponse)
async def organization_timeline(
    organization_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    event_type: Optional[str] = None,
    session: IdentitySession = Depends(require_organization_member),
    container: Container = Depends(get_container),
):
    events = await container.bus.list_for_organization(
        organization_id, limit=limit, offset=offset, event_type=event_type,
    )
    return TimelineResponse(
        events=[
            DomainEventResponse(
                id=str(e.id),
                event_type=e.event_type,
                event_version=e.event_version,
                organization_id=e.organization_id,
                actor_id=e.actor_id,
                actor_type=e.actor_type,
                payload=e.payload or {},
                metadata=e.event_metadata or {},
                processed=e.processed,
                created_at=e.created_at,
            )
            for e in events
        ],
        limit=limit,
        offset=offset,
    )

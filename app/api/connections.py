"""Connection and unmatch endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_user, get_store
from app.models import UserRef, room_id_for
from app.schemas import ConnectionRead, UnmatchRequest
from app.services import sessions as session_service
from app.services.store import MatchmakingStore

router = APIRouter(prefix="/connections", tags=["connections"])


@router.get("", response_model=list[ConnectionRead], response_model_by_alias=True)
def list_connections(
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> list[ConnectionRead]:
    connections = store.list_connections(current_user.id)
    partners = store.get_users(connection.other(current_user.id) for connection in connections)
    result: list[ConnectionRead] = []
    for connection in connections:
        partner_id = connection.other(current_user.id)
        partner = partners.get(partner_id)
        result.append(
            ConnectionRead(
                id=connection.id,
                partner_id=partner_id,
                partner_name=partner.name if partner is not None else None,
                partner_profile_picture=partner.profile_picture_url if partner is not None else None,
                match_id=connection.match_id,
                room_id=room_id_for(connection.user1_id, connection.user2_id),
                status=connection.status,
                created_at=connection.created_at,
            )
        )
    return result


@router.delete("/{connection_id}")
async def remove_connection(
    connection_id: str,
    clear_messages: bool = Query(default=True, alias="clearMessages"),
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> dict[str, Any]:
    return await session_service.remove_connection(
        store, connection_id, current_user.id, clear_messages=clear_messages
    )


@router.post("/unmatch")
async def unmatch(
    payload: UnmatchRequest,
    current_user: UserRef = Depends(get_current_user),
    store: MatchmakingStore = Depends(get_store),
) -> dict[str, Any]:
    """End everything between the caller and another user."""

    return await session_service.unmatch(
        store, current_user.id, payload.user_id, clear_messages=payload.clear_messages
    )

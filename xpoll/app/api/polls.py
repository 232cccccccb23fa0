"""Poll and vote endpoints."""

from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, Query

from xpoll.app.api.dependencies import CurrentUser, PollServiceDep
from xpoll.app.services.polls import PollCreate, VoteCreate

router = APIRouter(prefix="/api/polls", tags=["polls"])


@router.get("")
async def list_polls(
    user: CurrentUser,
    polls: PollServiceDep,
    type: Literal["public", "user"] = Query(default="public"),
) -> dict[str, Any]:
    """List public polls, or the caller's own polls with ``?type=user``."""
    if type == "user":
        return {"polls": await polls.list_for_user(user)}
    return {"polls": await polls.list_public(user.access_token)}


@router.post("", status_code=201)
async def create_poll(
    data: PollCreate,
    user: CurrentUser,
    polls: PollServiceDep,
) -> dict[str, Any]:
    return {"poll": await polls.create(user, data)}


@router.get("/{poll_id}")
async def get_poll(
    poll_id: UUID,
    user: CurrentUser,
    polls: PollServiceDep,
    results: bool = False,
) -> dict[str, Any]:
    """Get a poll with its options, or with vote counts when ``results=true``."""
    if results:
        return {"poll": await polls.get_with_results(poll_id, user.access_token)}
    return {"poll": await polls.get(poll_id, user.access_token)}


@router.delete("/{poll_id}")
async def delete_poll(
    poll_id: UUID,
    user: CurrentUser,
    polls: PollServiceDep,
) -> dict[str, Any]:
    await polls.delete(user, poll_id)
    return {"success": True}


@router.post("/{poll_id}/vote", status_code=201)
async def cast_vote(
    poll_id: UUID,
    vote: VoteCreate,
    user: CurrentUser,
    polls: PollServiceDep,
) -> dict[str, Any]:
    """Cast the caller's single vote on a poll."""
    record = await polls.cast_vote(user, poll_id, vote.option_id)
    return {"success": True, "vote": record}


@router.get("/{poll_id}/vote")
async def get_vote_status(
    poll_id: UUID,
    user: CurrentUser,
    polls: PollServiceDep,
) -> dict[str, Any]:
    return {"has_voted": await polls.has_voted(user, poll_id)}

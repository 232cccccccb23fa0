"""Poll and vote operations against the hosted database.

Row-level security and vote counting live in the backend; this layer
validates input and shapes responses.
"""

import math
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, field_validator

from xpoll.app.core.logging import get_log_context, get_logger
from xpoll.app.exceptions import NotFoundError, ValidationError
from xpoll.app.services.supabase import AuthenticatedUser, SupabaseClient

logger = get_logger(__name__)

MAX_OPTIONS = 10
MIN_OPTIONS = 2


class PollCreate(BaseModel):
    """Request model for creating a poll."""
    title: str = Field(..., min_length=3, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    options: list[str] = Field(..., min_length=MIN_OPTIONS, max_length=MAX_OPTIONS)
    expires_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("expires_at", "end_date")
    )
    is_public: bool = True
    allow_multiple_votes: bool = False

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", mode="before")
    @classmethod
    def blank_description_is_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("options")
    @classmethod
    def validate_options(cls, v: list[str]) -> list[str]:
        options = [option.strip() for option in v]
        options = [option for option in options if option]
        if len(options) < MIN_OPTIONS:
            raise ValueError("At least 2 valid options are required")
        if any(len(option) > 200 for option in options):
            raise ValueError("Options must be at most 200 characters")
        if len(set(options)) != len(options):
            raise ValueError("Duplicate options are not allowed")
        return options

    @field_validator("expires_at")
    @classmethod
    def validate_future(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v <= datetime.now(timezone.utc):
            raise ValueError("Expiration date must be in the future")
        return v


class VoteCreate(BaseModel):
    """Request model for casting a vote."""
    option_id: UUID = Field(..., validation_alias=AliasChoices("option_id", "optionId"))


def compute_percentages(results: list[dict[str, Any]]) -> tuple[list[dict[str, Any]], int]:
    """Attach a rounded ``percentage`` to each option result.

    Returns:
        (results with percentages, total vote count)
    """
    total = sum(int(row.get("vote_count") or 0) for row in results)
    shaped = []
    for row in results:
        votes = int(row.get("vote_count") or 0)
        # Half-up rounding, not Python's round-half-even.
        percentage = math.floor(votes * 100 / total + 0.5) if total else 0
        shaped.append({**row, "vote_count": votes, "percentage": percentage})
    return shaped, total


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_expired(poll: dict[str, Any], now: Optional[datetime] = None) -> bool:
    expires_at = _parse_timestamp(poll.get("expires_at"))
    if expires_at is None:
        return False
    return expires_at < (now or datetime.now(timezone.utc))


class PollService:
    """Poll CRUD and voting on behalf of an authenticated user."""

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def list_public(self, access_token: Optional[str] = None) -> list[dict[str, Any]]:
        return await self.client.select(
            "polls",
            access_token=access_token,
            columns="*,options:poll_options(*)",
            filters={"is_active": "eq.true", "is_public": "eq.true"},
            order="created_at.desc",
        )

    async def list_for_user(self, user: AuthenticatedUser) -> list[dict[str, Any]]:
        return await self.client.select(
            "polls",
            access_token=user.access_token,
            filters={"user_id": f"eq.{user.id}"},
            order="created_at.desc",
        )

    async def create(self, user: AuthenticatedUser, data: PollCreate) -> dict[str, Any]:
        rows = await self.client.insert(
            "polls",
            {
                "title": data.title,
                "description": data.description,
                "expires_at": data.expires_at.isoformat() if data.expires_at else None,
                "is_public": data.is_public,
                "allow_multiple_votes": data.allow_multiple_votes,
                "user_id": user.id,
            },
            access_token=user.access_token,
        )
        if not rows:
            raise ValidationError("Failed to create poll")
        poll = rows[0]

        options = await self.client.insert(
            "poll_options",
            [{"poll_id": poll["id"], "option_text": text} for text in data.options],
            access_token=user.access_token,
        )
        logger.info(
            f"Created poll {poll['id']} with {len(data.options)} options",
            extra=get_log_context(user_id=user.id),
        )
        return {**poll, "options": options}

    async def _get_poll_row(self, poll_id: UUID, access_token: Optional[str]) -> dict[str, Any]:
        rows = await self.client.select(
            "polls", access_token=access_token, filters={"id": f"eq.{poll_id}"}
        )
        if not rows:
            raise NotFoundError("Poll")
        return rows[0]

    async def get(self, poll_id: UUID, access_token: Optional[str] = None) -> dict[str, Any]:
        poll = await self._get_poll_row(poll_id, access_token)
        options = await self.client.select(
            "poll_options",
            access_token=access_token,
            filters={"poll_id": f"eq.{poll_id}"},
            order="created_at.asc",
        )
        return {**poll, "options": options}

    async def get_with_results(
        self, poll_id: UUID, access_token: Optional[str] = None
    ) -> dict[str, Any]:
        poll = await self._get_poll_row(poll_id, access_token)
        raw = await self.client.rpc(
            "get_poll_results", {"poll_id": str(poll_id)}, access_token=access_token
        )
        results, total = compute_percentages(raw or [])
        return {**poll, "results": results, "total_votes": total}

    async def delete(self, user: AuthenticatedUser, poll_id: UUID) -> None:
        deleted = await self.client.delete(
            "polls",
            filters={"id": f"eq.{poll_id}", "user_id": f"eq.{user.id}"},
            access_token=user.access_token,
        )
        if not deleted:
            raise NotFoundError("Poll")
        logger.info(f"Deleted poll {poll_id}", extra=get_log_context(user_id=user.id))

    async def has_voted(self, user: AuthenticatedUser, poll_id: UUID) -> bool:
        rows = await self.client.select(
            "votes",
            access_token=user.access_token,
            columns="id",
            filters={"poll_id": f"eq.{poll_id}", "user_id": f"eq.{user.id}"},
        )
        return len(rows) > 0

    async def cast_vote(
        self, user: AuthenticatedUser, poll_id: UUID, option_id: UUID
    ) -> dict[str, Any]:
        poll = await self.get(poll_id, user.access_token)
        if is_expired(poll):
            raise ValidationError("This poll has expired")
        if not any(option.get("id") == str(option_id) for option in poll["options"]):
            raise ValidationError("The selected option does not belong to this poll")
        if not poll.get("allow_multiple_votes") and await self.has_voted(user, poll_id):
            raise ValidationError("You have already voted in this poll")

        rows = await self.client.insert(
            "votes",
            {"poll_id": str(poll_id), "option_id": str(option_id), "user_id": user.id},
            access_token=user.access_token,
        )
        logger.info(f"Vote recorded on poll {poll_id}", extra=get_log_context(user_id=user.id))
        return rows[0] if rows else {}

"""Pydantic request bodies for API endpoints."""

from pydantic import BaseModel, Field

from story_ai.models import AIConfig, Character, Location, LogEntry


class CheckConnectionBody(AIConfig):
    pass


class ActorMemoryBody(BaseModel):
    history: list[LogEntry]
    actor_id: str
    current_location_id: str | None = None
    capacity: int = 10
    token_limit: int = 64000
    characters: dict[str, Character] = Field(default_factory=dict)
    locations: dict[str, Location] = Field(default_factory=dict)


class WorldMemoryBody(BaseModel):
    history: list[LogEntry]
    current_round: int
    rounds_to_keep: int = 20
    token_limit: int = 64000

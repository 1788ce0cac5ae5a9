"""Memory preview endpoints: what a prompt would see as history."""

from fastapi import APIRouter

from story_ai.memory import build_actor_memory, build_world_memory

from .models import ActorMemoryBody, WorldMemoryBody

router = APIRouter(prefix="/memory")


@router.post("/actor")
async def actor_memory(body: ActorMemoryBody):
    """Decay-sampled memory for one actor."""
    memory = build_actor_memory(
        body.history,
        body.actor_id,
        body.current_location_id,
        capacity=body.capacity,
        token_limit=body.token_limit,
        characters=body.characters,
        locations=body.locations,
    )
    return {"memory": memory}


@router.post("/world")
async def world_memory(body: WorldMemoryBody):
    """Recent world history."""
    memory = build_world_memory(
        body.history,
        body.current_round,
        rounds_to_keep=body.rounds_to_keep,
        token_limit=body.token_limit,
    )
    return {"memory": memory}

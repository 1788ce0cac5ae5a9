"""Health check and connection check endpoints."""

from fastapi import APIRouter, Request

from story_ai.llm import ConnectionCheck, check_connection, resolve_api_key

from .models import CheckConnectionBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/check-connection", response_model=ConnectionCheck)
async def check_model_connection(body: CheckConnectionBody, request: Request):
    """Send a greeting to the configured model and report the outcome."""
    settings = request.app.state.settings
    api_key = resolve_api_key(body, settings.api_keys)
    return await check_connection(body, api_key)

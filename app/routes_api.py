"""JSON API used by the browser UI.

GET /api/search?q=&offset=&type=   → upstream search results
GET /api/stream?trackId=           → {url, trackId}
GET /api/player-state[?trackId=]   → session-scoped player state
PUT /api/player-state              → save player state
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.dependencies import get_upstream
from app.upstream import UpstreamClient
from core.errors import RequestFailed
from core.models import PlayerState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["api"])

PLAYER_STATE_KEY = "openspot_player_state"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


# ---------------------------------------------------------------------------
# /api/search
# ---------------------------------------------------------------------------

@router.get("/search")
async def search(
    q: Optional[str] = None,
    offset: str = "0",
    type: str = "track",
    upstream: UpstreamClient = Depends(get_upstream),
):
    """Proxy a search to the upstream API."""
    if not q:
        return _error(400, "Search query is required")
    try:
        offset_value = int(offset)
    except ValueError:
        return _error(400, "offset must be an integer")
    if offset_value < 0:
        return _error(400, "offset must be non-negative")

    try:
        result = await upstream.search(q, offset_value, type)
    except (RequestFailed, httpx.HTTPError) as exc:
        logger.error("Search API error for %r: %s", q, exc)
        return _error(500, "Failed to fetch search results")

    return JSONResponse(result.model_dump(mode="json", by_alias=True, exclude_unset=True))


# ---------------------------------------------------------------------------
# /api/stream
# ---------------------------------------------------------------------------

@router.get("/stream")
async def stream(
    trackId: Optional[str] = None,  # noqa: N803 — query parameter name
    upstream: UpstreamClient = Depends(get_upstream),
):
    """Resolve the playable stream URL for a track."""
    if not trackId:
        return _error(400, "Track ID is required")

    try:
        result = await upstream.stream(trackId)
    except (RequestFailed, httpx.HTTPError) as exc:
        logger.error("Stream API error for %s: %s", trackId, exc)
        return _error(500, "Failed to get stream URL")

    return JSONResponse(result.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# /api/player-state
# ---------------------------------------------------------------------------

def _load_player_state(request: Request) -> PlayerState:
    raw = request.session.get(PLAYER_STATE_KEY)
    if not raw:
        return PlayerState()
    try:
        return PlayerState.model_validate(raw)
    except ValidationError:
        logger.warning("Discarding unreadable player state from session")
        request.session.pop(PLAYER_STATE_KEY, None)
        return PlayerState()


@router.get("/player-state")
async def get_player_state(request: Request, trackId: Optional[str] = None):  # noqa: N803
    """Return the stored state; ``resumeAt`` only applies to the same track."""
    state = _load_player_state(request)
    body = state.model_dump(by_alias=True)
    body["resumeAt"] = state.resume_position(trackId)
    return JSONResponse(body)


@router.put("/player-state")
async def put_player_state(request: Request):
    """Persist the player state for this browser session."""
    try:
        payload = await request.json()
        state = PlayerState.model_validate(payload)
    except ValueError as exc:
        return _error(400, f"Invalid player state: {exc}")

    request.session[PLAYER_STATE_KEY] = state.model_dump(by_alias=True)
    return JSONResponse(state.model_dump(by_alias=True))

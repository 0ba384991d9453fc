"""Conversation memory endpoints."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/{project_id}")
async def get_memory(project_id: str, request: Request):
    """Memory statistics and the history block the decision model sees."""
    store = request.app.state.services.memory
    return {
        **store.get(project_id).stats(),
        "formattedHistory": store.formatted_history(project_id),
    }


@router.delete("/{project_id}")
async def clear_memory(project_id: str, request: Request):
    request.app.state.services.memory.clear(project_id)
    return {"projectId": project_id, "cleared": True}

"""Agent session registry endpoints."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("")
async def list_sessions(request: Request):
    """All recorded agent sessions, grouped by project.

    Returns:
        Registry snapshot plus live counts
    """
    registry = request.app.state.services.registry
    snapshot = registry.snapshot()
    return {
        "projects": snapshot,
        "total": sum(len(records) for records in snapshot.values()),
        "active": len(registry.active_sessions()),
    }


@router.get("/{project_id}")
async def project_sessions(project_id: str, request: Request):
    registry = request.app.state.services.registry
    return {
        "projectId": project_id,
        "sessions": [s.to_dict() for s in registry.history(project_id)],
    }

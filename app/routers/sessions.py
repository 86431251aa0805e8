"""Session lifecycle routes."""

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from app.dependencies import create_engine, drop_engine, get_engine, get_stage_info
from execution import micro_flow

router = APIRouter()


@router.post("/sessions", status_code=201)
def create_session():
    """Create a session and return its opening message."""
    engine = create_engine()
    result = engine.start()
    return JSONResponse(
        status_code=201,
        content={"session_id": engine.session_id, "turn": result.to_dict()},
    )


@router.get("/sessions/{session_id}")
def get_session(session_id: str):
    """Return the session's cursor, captured answers, and recaps."""
    engine = get_engine(session_id)
    snapshot = engine.snapshot()
    return {
        "session_id": session_id,
        "cursor": snapshot["cursor"],
        "complete": snapshot["complete"],
        "captured": snapshot["captured"],
        "recaps": snapshot["recaps"],
        "micro_flow": micro_flow.view(engine.session.micro_flow),
        "progress": engine.get_progress(),
        "stages": get_stage_info(engine),
        "created_at": snapshot["created_at"],
        "updated_at": snapshot["updated_at"],
    }


@router.get("/sessions/{session_id}/progress")
def get_progress(session_id: str):
    return get_engine(session_id).get_progress()


@router.get("/sessions/{session_id}/history")
def get_history(session_id: str):
    """Return the bounded conversation history (summary entry first, if any)."""
    engine = get_engine(session_id)
    return {"session_id": session_id, "turns": engine.snapshot()["history"]}


@router.delete("/sessions/{session_id}")
def delete_session(session_id: str):
    """Abandon a session and remove its snapshot."""
    if not drop_engine(session_id):
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return {"session_id": session_id, "deleted": True}

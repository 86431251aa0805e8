"""Event ingress route for the conversational interface."""

from fastapi import APIRouter

from app.dependencies import get_engine
from app.models.events import EventRequest

router = APIRouter()


@router.post("/sessions/{session_id}/events")
def post_event(session_id: str, body: EventRequest):
    """Apply one text, selection, or control event and return the turn result.

    Rejected transitions come back as a normal 200 response with
    ``status == "rejected"``; the session is unchanged.
    """
    engine = get_engine(session_id)
    result = engine.handle_event(body.event.model_dump(exclude_none=True))
    return result.to_dict()

"""Shared dependencies for the FastAPI web layer.

Sessions live in an in-process registry keyed by id. Each entry owns its
own ConversationStateMachine (and therefore its own lock); a miss falls
back to the snapshot on disk.
"""

import logging
import threading

from fastapi import HTTPException

from execution import session_store
from execution.conversation_engine import ConversationStateMachine
from execution.session import Session, new_session
from execution.session_store import PersistenceQueue
from execution.stage_table import STAGES, Stage

logger = logging.getLogger(__name__)

STAGE_LABELS = {
    Stage.FOUNDATION.value: "Foundation",
    Stage.PLAN.value: "Plan",
    Stage.OUTPUTS.value: "Outputs",
    Stage.DONE.value: "Complete",
}

_registry: dict[str, ConversationStateMachine] = {}
_registry_lock = threading.Lock()
_persistence: PersistenceQueue | None = None


def get_persistence() -> PersistenceQueue:
    """Return the process-wide background snapshot writer."""
    global _persistence
    with _registry_lock:
        if _persistence is None:
            _persistence = PersistenceQueue()
        return _persistence


def create_engine() -> ConversationStateMachine:
    """Create a new session and register its state machine."""
    engine = ConversationStateMachine(new_session(), store=get_persistence())
    with _registry_lock:
        _registry[engine.session_id] = engine
    logger.info("Created session %s", engine.session_id)
    return engine


def get_engine(session_id: str) -> ConversationStateMachine:
    """Look up a session's state machine, rehydrating from disk on a miss.

    Raises:
        HTTPException: 404 if no such session exists in memory or on disk.
        SessionLoadError: If the snapshot on disk is corrupt.
    """
    with _registry_lock:
        engine = _registry.get(session_id)
    if engine is not None:
        return engine

    try:
        snapshot = session_store.load(session_id)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")

    session = Session.from_snapshot(snapshot)
    with _registry_lock:
        # Another request may have rehydrated the same session meanwhile
        engine = _registry.setdefault(
            session_id, ConversationStateMachine(session, store=get_persistence()),
        )
    logger.info("Rehydrated session %s from snapshot", session_id)
    return engine


def drop_engine(session_id: str) -> bool:
    """Remove a session from memory and disk. Returns True if it existed."""
    with _registry_lock:
        engine = _registry.pop(session_id, None)
    if engine is not None:
        engine.close()
    persistence = get_persistence()
    persistence.flush(session_id)
    persistence.forget(session_id)
    try:
        removed = session_store.delete(session_id)
    except ValueError:
        removed = False
    return engine is not None or removed


def clear_registry() -> None:
    """Forget every in-memory session (snapshots on disk are kept)."""
    with _registry_lock:
        _registry.clear()


def get_stage_info(engine: ConversationStateMachine) -> dict:
    """Return stage navigation data for clients."""
    progress = engine.get_progress()
    current = progress["current_stage_id"]
    current_index = len(STAGES) if current == Stage.DONE.value else [s.stage.value for s in STAGES].index(current)
    stages = []
    for i, stage_def in enumerate(STAGES):
        key = stage_def.stage.value
        stages.append({
            "key": key,
            "label": STAGE_LABELS[key],
            "index": i,
            "is_current": i == current_index,
            "is_completed": i < current_index,
            "is_future": i > current_index,
            "steps": [step.key for step in stage_def.steps],
        })
    return {
        "current_stage": current,
        "current_label": STAGE_LABELS[current],
        "stage_index": current_index,
        "total_stages": len(STAGES),
        "stages": stages,
    }

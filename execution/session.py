"""Session aggregate: cursor, captured record, micro-flow, recaps, history.

A Session is a plain value owned by exactly one state machine. It holds
no locks or live references, so ``to_snapshot`` yields a JSON-ready dict
and ``from_snapshot`` rebuilds an identical session.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from config.settings import CONTEXT_WINDOW_TURNS, SNAPSHOT_VERSION
from execution.context_window import ContextWindowManager
from execution.data_capture import record_from_dict, record_to_dict
from execution.micro_flow import MicroFlowState
from execution.recap_generator import StageRecap
from execution.stage_table import STAGES, Stage, StepDefinition, find_step, get_step


def _now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class SessionLoadError(Exception):
    """Raised when a snapshot cannot be turned back into a Session."""


@dataclass
class Session:
    session_id: str
    stage_index: int = 0
    step_index: int = 0
    captured: dict = field(default_factory=dict)
    micro_flow: MicroFlowState | None = None
    recaps: dict[str, StageRecap] = field(default_factory=dict)
    history: ContextWindowManager = field(default_factory=ContextWindowManager)
    complete: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def current_stage(self) -> Stage:
        if self.complete:
            return Stage.DONE
        return STAGES[self.stage_index].stage

    @property
    def current_step(self) -> StepDefinition | None:
        if self.complete:
            return None
        return get_step(self.stage_index, self.step_index)

    def touch(self) -> None:
        self.updated_at = _now()

    def to_snapshot(self) -> dict:
        """Return a plain serializable snapshot of the session."""
        return {
            "version": SNAPSHOT_VERSION,
            "session_id": self.session_id,
            "cursor": {"stage_index": self.stage_index, "step_index": self.step_index},
            "complete": self.complete,
            "captured": record_to_dict(self.captured),
            "micro_flow": self.micro_flow.to_dict() if self.micro_flow else None,
            "recaps": {stage: recap.to_dict() for stage, recap in self.recaps.items()},
            "history": self.history.to_list(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict) -> "Session":
        """Rebuild a session from a snapshot.

        Raises:
            SessionLoadError: If the snapshot is structurally unusable
                (missing fields, cursor outside the stage table, unknown
                step keys).
        """
        try:
            cursor = snapshot["cursor"]
            session = cls(
                session_id=snapshot["session_id"],
                stage_index=int(cursor["stage_index"]),
                step_index=int(cursor["step_index"]),
                captured=record_from_dict(snapshot.get("captured")),
                micro_flow=MicroFlowState.from_dict(snapshot["micro_flow"]) if snapshot.get("micro_flow") else None,
                recaps={s: StageRecap.from_dict(r) for s, r in (snapshot.get("recaps") or {}).items()},
                history=ContextWindowManager.from_list(snapshot.get("history") or [], CONTEXT_WINDOW_TURNS),
                complete=bool(snapshot.get("complete", False)),
                created_at=snapshot.get("created_at") or _now(),
                updated_at=snapshot.get("updated_at") or _now(),
            )
            get_step(session.stage_index, session.step_index)
            for key in session.captured:
                find_step(key)
        except (KeyError, TypeError, ValueError, IndexError) as e:
            raise SessionLoadError(f"Corrupt session snapshot: {e}") from e
        return session


def new_session(session_id: str | None = None) -> Session:
    """Create an empty session positioned at the first step."""
    return Session(session_id=session_id or uuid.uuid4().hex)

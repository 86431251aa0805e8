"""Unit tests for execution/session.py."""

import pytest

from execution.micro_flow import MicroFlowState
from execution.recap_generator import generate
from execution.session import Session, SessionLoadError, new_session
from execution.stage_table import Stage


class TestNewSession:
    def test_starts_at_first_step(self):
        session = new_session()
        assert (session.stage_index, session.step_index) == (0, 0)
        assert session.captured == {}
        assert session.current_stage == Stage.FOUNDATION
        assert session.current_step.key == "foundation.big_idea"
        assert len(session.session_id) == 32

    def test_explicit_id(self):
        assert new_session("abc").session_id == "abc"

    def test_sessions_share_nothing(self):
        a, b = new_session(), new_session()
        a.history.add_turn("bot", "hi")
        assert len(b.history) == 0
        assert a.session_id != b.session_id

    def test_complete_session(self):
        session = new_session()
        session.complete = True
        assert session.current_stage == Stage.DONE
        assert session.current_step is None


class TestSnapshot:
    def test_round_trip(self, plan_record, sample_phases):
        session = new_session("round-trip")
        session.captured = plan_record
        session.stage_index, session.step_index = 2, 0
        session.recaps["foundation"] = generate(Stage.FOUNDATION, plan_record)
        session.micro_flow = MicroFlowState(
            step="outputs.milestones", suggested_items=sample_phases, working_items=sample_phases,
        )
        session.history.add_turn("bot", "Milestones next", stage="outputs", step="milestones")

        restored = Session.from_snapshot(session.to_snapshot())
        assert restored.to_snapshot() == session.to_snapshot()
        assert restored.captured["plan.resources"].skipped is True
        assert restored.recaps["foundation"].summary_text == session.recaps["foundation"].summary_text

    def test_snapshot_is_plain_data(self, plan_record):
        session = new_session("plain")
        session.captured = plan_record
        snapshot = session.to_snapshot()
        assert snapshot["cursor"] == {"stage_index": 0, "step_index": 0}
        assert snapshot["micro_flow"] is None
        assert isinstance(snapshot["captured"]["plan.phases"], dict)

    def test_missing_cursor(self):
        snapshot = new_session("x").to_snapshot()
        del snapshot["cursor"]
        with pytest.raises(SessionLoadError):
            Session.from_snapshot(snapshot)

    def test_cursor_outside_table(self):
        snapshot = new_session("x").to_snapshot()
        snapshot["cursor"] = {"stage_index": 0, "step_index": 7}
        with pytest.raises(SessionLoadError):
            Session.from_snapshot(snapshot)

    def test_unknown_captured_key(self, foundation_record):
        session = new_session("x")
        session.captured = foundation_record
        snapshot = session.to_snapshot()
        snapshot["captured"]["plan.budget"] = snapshot["captured"]["foundation.big_idea"]
        with pytest.raises(SessionLoadError):
            Session.from_snapshot(snapshot)

    def test_not_a_dict(self):
        with pytest.raises(SessionLoadError):
            Session.from_snapshot(["not", "a", "snapshot"])

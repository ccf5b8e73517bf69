import json
import math
from datetime import UTC, datetime, timedelta
from pathlib import Path

from feature_factory.results import AgentResult, StructuredOutput
from feature_factory.session import SessionStore, WorkflowState, generate_session_id


def _state(session_id: str, status: str = "running", **overrides: object) -> WorkflowState:
    state = WorkflowState(
        session_id=session_id,
        workflow="new-feature",
        description="Add login",
        budget_usd=5.0,
        model="sonnet",
        status=status,  # type: ignore[arg-type]
    )
    for key, value in overrides.items():
        setattr(state, key, value)
    return state


def test_state_roundtrip_preserves_results_and_unlimited_budget(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    state = _state("s1", budget_usd=math.inf)
    result = AgentResult(
        agent="architect",
        success=True,
        output=StructuredOutput(kind="parsed", data={"approved": True}),
        cost_usd=0.4,
        turns_used=3,
    )
    state.phase_results["architect"] = result
    state.phase_history[0] = result
    state.retry_counts[2] = 1
    state.checkpoints["architect"] = "ff-checkpoint/s1/pre-0-design"
    state.recompute_totals()

    store.save(state)
    loaded = store.load("s1")

    assert loaded is not None
    assert loaded.metadata.working_directory == str(tmp_path.resolve())
    restored = loaded.state
    assert math.isinf(restored.budget_usd)
    assert restored.phase_history[0].output.get("approved") is True
    assert restored.retry_counts == {2: 1}
    assert restored.total_cost_usd == 0.4
    assert restored.total_turns == 3
    payload = json.loads(store.session_path("s1").read_text(encoding="utf-8"))
    assert payload["state"]["budgetUsd"] is None


def test_state_dir_is_git_ignored(tmp_path: Path) -> None:
    SessionStore(tmp_path).save(_state("s1"))

    assert (tmp_path / ".feature-factory" / ".gitignore").read_text(encoding="utf-8") == "*\n"


def test_missing_or_corrupt_session_loads_as_none(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.sessions_dir.mkdir(parents=True, exist_ok=True)
    store.session_path("broken").write_text("{not json", encoding="utf-8")

    assert store.load("absent") is None
    assert store.load("broken") is None
    assert store.list_sessions() == []


def test_list_sessions_newest_first_and_resumable(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save(_state("old", status="awaiting-approval"))
    store.save(_state("done", status="completed"))

    summaries = store.list_sessions()
    resumable = store.get_resumable()

    assert {summary.session_id for summary in summaries} == {"old", "done"}
    assert resumable is not None
    assert resumable.state.session_id == "old"


def test_cleanup_respects_age_and_status_filters(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    for session_id, status in [("a", "completed"), ("b", "failed"), ("c", "cancelled"), ("d", "running")]:
        store.save(_state(session_id, status=status))
    later = datetime.now(UTC) + timedelta(days=30)

    assert store.cleanup(older_than_days=60, now=later) == 0
    assert store.cleanup(older_than_days=7, now=later) == 2
    assert {summary.session_id for summary in store.list_sessions()} == {"b", "d"}
    assert store.cleanup(older_than_days=7, include_failed=True, now=later) == 1
    assert [summary.session_id for summary in store.list_sessions()] == ["d"]


def test_delete_reports_missing_sessions(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save(_state("s1"))

    assert store.delete("s1") is True
    assert store.delete("s1") is False


def test_generated_session_ids_are_unique() -> None:
    ids = {generate_session_id() for _ in range(50)}

    assert len(ids) == 50
    assert all("-" in session_id for session_id in ids)

from feature_factory.config import StallConfig
from feature_factory.stall import (
    StallTracker,
    ToolCallRecord,
    detect_idle,
    detect_oscillation,
    detect_repetition,
    hash_tool_input,
)


def _call(name: str, tool_input: dict, *, files: bool = False) -> ToolCallRecord:
    return ToolCallRecord(name, hash_tool_input(tool_input), had_file_activity=files)


def test_input_hash_ignores_key_order_at_any_depth() -> None:
    first = hash_tool_input({"a": 1, "b": {"x": [1, 2], "y": "z"}})
    second = hash_tool_input({"b": {"y": "z", "x": [1, 2]}, "a": 1})

    assert first == second
    assert first != hash_tool_input({"a": 1, "b": {"x": [2, 1], "y": "z"}})


def test_repetition_requires_consecutive_identical_calls() -> None:
    read = _call("Read", {"file_path": "a.py"})
    other = _call("Read", {"file_path": "b.py"})

    assert detect_repetition([read, read], 3) is None
    assert detect_repetition([read, read, other, read], 3) is None

    detection = detect_repetition([other, read, read, read], 3)

    assert detection is not None
    assert detection.type == "repetition"
    assert "3 times" in detection.description


def test_oscillation_needs_a_full_alternating_window() -> None:
    a = _call("Read", {"file_path": "a.py"})
    b = _call("Edit", {"file_path": "a.py", "old": "x", "new": "y"})

    assert detect_oscillation([a, b, a, b, a], 6) is None
    assert detect_oscillation([a, b, a, b, a, a], 6) is None
    assert detect_oscillation([a, a, a, a, a, a], 6) is None

    detection = detect_oscillation([a, b, a, b, a, b], 6)

    assert detection is not None
    assert detection.description == "Oscillating between Read and Edit"


def test_idle_counts_turns_since_file_activity() -> None:
    assert detect_idle(9, 0, 10) is None
    detection = detect_idle(12, 2, 10)

    assert detection is not None
    assert detection.description == "No file changes for 10 turns"


def test_tracker_reports_and_limits_interventions() -> None:
    tracker = StallTracker(StallConfig(repetition_threshold=3, max_interventions=2))
    grep = _call("Grep", {"pattern": "TODO"})

    for _ in range(3):
        tracker.record_turn([grep])
    detection = tracker.detect()

    assert detection is not None
    assert detection.type == "repetition"
    assert detection.intervention_message().startswith("=== STALL DETECTED ===")

    tracker.record_intervention(detection)
    assert not tracker.should_hard_stop()
    tracker.record_intervention(detection)
    assert tracker.should_hard_stop()
    assert tracker.summary()["toolCalls"] == {"Grep": 3}
    assert tracker.summary()["stalls"] == ["repetition", "repetition"]


def test_repetition_outranks_idle_when_both_fire() -> None:
    tracker = StallTracker(StallConfig(repetition_threshold=3, idle_threshold=10))
    grep = _call("Grep", {"pattern": "TODO"})
    for _ in range(10):
        tracker.record_turn([grep])

    assert detect_idle(tracker.current_turn, tracker.last_file_activity_turn, 10) is not None
    detection = tracker.detect()

    assert detection is not None
    assert detection.type == "repetition"
    assert "10 times" in detection.description


def test_oscillation_outranks_idle_when_both_fire() -> None:
    tracker = StallTracker(StallConfig(oscillation_window=6, idle_threshold=10))
    read = _call("Read", {"file_path": "a.py"})
    grep = _call("Grep", {"pattern": "handler"})
    for turn in range(12):
        tracker.record_turn([read if turn % 2 == 0 else grep])

    assert detect_idle(tracker.current_turn, tracker.last_file_activity_turn, 10) is not None
    detection = tracker.detect()

    assert detection is not None
    assert detection.type == "oscillation"
    assert detection.description == "Oscillating between Read and Grep"


def test_idle_reported_when_calls_vary() -> None:
    tracker = StallTracker(StallConfig(idle_threshold=10))
    for turn in range(10):
        tracker.record_turn([_call("Read", {"file_path": f"f{turn}.py"})])

    detection = tracker.detect()

    assert detection is not None
    assert detection.type == "idle"


def test_file_activity_resets_idle_clock() -> None:
    tracker = StallTracker(StallConfig(idle_threshold=3))
    tracker.record_turn([_call("Read", {"file_path": "a.py"})])
    tracker.record_turn([_call("Write", {"file_path": "b.py"}, files=True)])
    tracker.record_turn([_call("Read", {"file_path": "c.py"})])

    assert tracker.last_file_activity_turn == 2
    assert tracker.detect() is None


def test_disabled_tracker_never_detects() -> None:
    tracker = StallTracker(StallConfig(enabled=False))
    grep = _call("Grep", {"pattern": "x"})
    for _ in range(20):
        tracker.record_turn([grep])

    assert tracker.detect() is None

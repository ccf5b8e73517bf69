from feature_factory.context import ContextLimits, ContextManager


def _tool_use(name: str, **tool_input: object) -> dict:
    return {"role": "assistant", "content": [{"type": "tool_use", "id": name, "name": name, "input": tool_input}]}


def _tool_result(text: str) -> dict:
    return {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "x", "content": text}]}


def test_short_output_is_left_alone() -> None:
    result = ContextManager().truncate("Bash", "ok\n")

    assert result.output == "ok\n"
    assert result.was_truncated is False
    assert result.original_length == result.truncated_length == 3


def test_bash_output_keeps_head_and_tail_lines() -> None:
    manager = ContextManager(ContextLimits(bash_output_max_chars=200, bash_head_lines=2, bash_tail_lines=2))
    output = "\n".join(f"line {number}" for number in range(50))

    result = manager.truncate("Bash", output)

    assert result.was_truncated
    assert result.output.startswith("line 0\nline 1\n")
    assert result.output.endswith("line 48\nline 49")
    assert "[TRUNCATED: 46 lines omitted]" in result.output
    assert result.original_length == len(output)


def test_read_output_keeps_both_ends() -> None:
    manager = ContextManager(ContextLimits(read_output_max_chars=160))
    output = "A" * 200 + "B" * 200

    result = manager.truncate("Read", output)

    assert result.was_truncated
    assert result.output.startswith("A" * 50)
    assert result.output.endswith("B" * 50)
    assert "characters omitted" in result.output


def test_grep_output_is_cut_on_line_boundaries() -> None:
    manager = ContextManager(ContextLimits(grep_output_max_chars=200))
    output = "\n".join(f"src/module_{number}.py:1:match" for number in range(40))

    result = manager.truncate("Grep", output)

    assert result.was_truncated
    kept = result.output.split("\n\n[TRUNCATED")[0].split("\n")
    assert all(line.startswith("src/module_") for line in kept)
    assert f"[TRUNCATED: {40 - len(kept)} more matches]" in result.output


def test_glob_output_is_capped_by_path_count() -> None:
    manager = ContextManager(ContextLimits(glob_max_paths=3))

    result = manager.truncate("Glob", "a.py\nb.py\nc.py\nd.py\ne.py\n")

    assert result.output == "a.py\nb.py\nc.py\n\n[TRUNCATED: 2 more paths]"


def test_should_compact_uses_reported_tokens_or_estimate() -> None:
    manager = ContextManager(ContextLimits(compaction_threshold_tokens=100))

    assert manager.should_compact(150)
    assert not manager.should_compact(99)
    assert manager.should_compact(0, [{"role": "user", "content": "x" * 400}])
    assert ContextManager.estimate_tokens([{"role": "user", "content": "x" * 40}]) == 10


def test_compaction_summarizes_evicted_turns_into_initial_prompt() -> None:
    manager = ContextManager(ContextLimits(keep_recent_turn_pairs=1))
    messages = [
        {"role": "user", "content": "Implement the feature"},
        _tool_use("Read", file_path="/repo/src/pkg/sub/module.py"),
        _tool_result("contents of /repo/src/pkg/sub/module.py"),
        _tool_use("Bash", command="pytest -q"),
        _tool_result("===== 3 passed in 0.10s ====="),
        _tool_use("Grep", pattern="def handler"),
        _tool_result("src/app.py:3:def handler"),
    ]

    result = manager.compact(messages)

    assert result.turn_pairs_removed == 2
    assert len(result.messages) == 3
    assert result.messages[1:] == messages[-2:]
    initial = result.messages[0]["content"]
    assert initial.startswith("Implement the feature")
    assert "[CONTEXT COMPACTED - Turns 2-5 summarized]" in initial
    assert "- Turn 2: Read .../pkg/sub/module.py" in initial
    assert "- Turn 4: Bash pytest -q" in initial
    assert "Files touched: /repo/src/pkg/sub/module.py" in initial
    assert "Test status: 3 passed in 0.10s" in initial


def test_compaction_is_noop_for_short_history() -> None:
    manager = ContextManager(ContextLimits(keep_recent_turn_pairs=2))
    messages = [{"role": "user", "content": "task"}, _tool_use("Glob", pattern="*.py")]

    result = manager.compact(messages)

    assert result.messages == messages
    assert result.turn_pairs_removed == 0

import json

import pytest

from agent_runner.config import ToolsConfig
from agent_runner.tool_loop import (
    STOP_COMPLETED,
    STOP_LOOP_DETECTED,
    STOP_MAX_STEPS,
    STOP_MODEL_ERROR,
    ModelResponse,
    ToolLoopController,
)
from agent_runner.tool_policy import ToolCall


class ScriptedModel:
    """Returns queued responses and records what it was called with."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def __call__(self, items, tools_enabled):
        self.calls.append((list(items), tools_enabled))
        if not self.responses:
            return ModelResponse(text="")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _controller(**overrides):
    cfg = ToolsConfig(retry_backoff_ms=0, **overrides)
    return ToolLoopController(tool_cfg=cfg)


@pytest.mark.asyncio
async def test_run_without_tool_calls_returns_text():
    model = ScriptedModel([])

    async def executor(call):
        raise AssertionError("no tools expected")

    outcome = await _controller().run(model, executor, ModelResponse(text="Hello"))

    assert outcome.text == "Hello"
    assert outcome.stop_reason == STOP_COMPLETED
    assert outcome.rounds == 0
    assert model.calls == []


@pytest.mark.asyncio
async def test_run_executes_rounds_and_feeds_results_back():
    executed = []

    async def executor(call):
        executed.append((call.name, call.arguments))
        return {"lines": 3} if call.name == "glob" else "file body"

    model = ScriptedModel([
        ModelResponse(tool_calls=[ToolCall(name="read", arguments={"path": "a.md"}, id="c2")]),
        ModelResponse(text="Done reading."),
    ])
    first = ModelResponse(text="Checking.", tool_calls=[ToolCall(name="glob", arguments='{"pattern": "*.md"}')])

    outcome = await _controller().run(model, executor, first, transcript=[{"role": "user", "content": "go"}])

    assert outcome.text == "Done reading."
    assert outcome.stop_reason == STOP_COMPLETED
    assert outcome.rounds == 2
    assert outcome.steps == 2
    assert executed == [("glob", {"pattern": "*.md"}), ("read", {"path": "a.md"})]
    assert outcome.pending_calls == []

    items, tools_enabled = model.calls[0]
    assert tools_enabled is True
    assert items[0] == {"role": "user", "content": "go"}
    assert items[1] == {
        "type": "function_call",
        "call_id": "call_0",
        "name": "glob",
        "arguments": '{"pattern": "*.md"}',
    }
    assert items[2] == {"type": "function_call_output", "call_id": "call_0", "output": '{"lines": 3}'}
    assert outcome.transcript[-1]["call_id"] == "c2"


@pytest.mark.asyncio
async def test_round_calls_run_concurrently_and_keep_order():
    async def executor(call):
        return call.arguments["path"]

    calls = [ToolCall(name="read", arguments={"path": f"f{idx}"}) for idx in range(3)]
    model = ScriptedModel([ModelResponse(text="ok")])

    outcome = await _controller().run(model, executor, ModelResponse(tool_calls=calls))

    assert [result.output for result in outcome.tool_results] == ["f0", "f1", "f2"]


@pytest.mark.asyncio
async def test_malformed_arguments_are_reported_without_executing():
    async def executor(call):
        raise AssertionError("must not run")

    model = ScriptedModel([ModelResponse(text="sorry")])
    first = ModelResponse(tool_calls=[ToolCall(name="read", arguments='{"path": "x')])

    outcome = await _controller().run(model, executor, first)

    result = outcome.tool_results[0]
    assert result.ok is False
    assert result.error == "Malformed arguments: malformed JSON arguments (possibly truncated)"
    output = model.calls[0][0][-1]["output"]
    assert json.loads(output) == {"error": result.error}


@pytest.mark.asyncio
async def test_idempotent_tool_retries_transient_errors():
    attempts = []

    async def executor(call):
        attempts.append(call.name)
        if len(attempts) < 3:
            raise RuntimeError("503 Service Unavailable")
        return "ok"

    model = ScriptedModel([ModelResponse(text="fetched")])
    first = ModelResponse(tool_calls=[ToolCall(name="webfetch", arguments={"url": "https://example.com"})])

    outcome = await _controller().run(model, executor, first)

    assert attempts == ["webfetch"] * 3
    assert outcome.tool_results[0].ok is True
    assert outcome.tool_results[0].output == "ok"


@pytest.mark.asyncio
async def test_mutating_tool_is_never_retried():
    attempts = []

    async def executor(call):
        attempts.append(call.name)
        raise RuntimeError("timeout")

    model = ScriptedModel([ModelResponse(text="failed")])
    first = ModelResponse(tool_calls=[ToolCall(name="bash", arguments={"command": "deploy"})])

    outcome = await _controller().run(model, executor, first)

    assert attempts == ["bash"]
    assert outcome.tool_results[0].ok is False
    assert outcome.tool_results[0].error == "timeout"


@pytest.mark.asyncio
async def test_retry_budget_is_bounded():
    attempts = []

    async def executor(call):
        attempts.append(call.name)
        raise RuntimeError("rate limit")

    model = ScriptedModel([ModelResponse(text="gave up")])
    first = ModelResponse(tool_calls=[ToolCall(name="websearch", arguments={"query": "q"})])

    await _controller(max_attempts=2).run(model, executor, first)

    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_repeated_round_triggers_forced_synthesis():
    async def executor(call):
        return "same"

    repeat = ToolCall(name="read", arguments={"path": "a"})
    model = ScriptedModel([
        ModelResponse(tool_calls=[ToolCall(name="READ", arguments={"path": "a"})]),
        ModelResponse(text="Final from synthesis."),
    ])

    outcome = await _controller().run(model, executor, ModelResponse(tool_calls=[repeat]))

    assert outcome.stop_reason == STOP_LOOP_DETECTED
    assert outcome.rounds == 1
    assert outcome.forced_synthesis is True
    assert outcome.text == "Final from synthesis."
    items, tools_enabled = model.calls[-1]
    assert tools_enabled is False
    assert items[-1]["content"].startswith("[SYSTEM CONTINUATION]\nTool loop ended because: repeated identical tool round.")
    assert [call.name for call in outcome.pending_calls] == ["READ"]


@pytest.mark.asyncio
async def test_max_steps_falls_back_when_synthesis_is_empty():
    counter = iter(range(100))

    async def executor(call):
        return "chunk"

    def next_round():
        return ModelResponse(tool_calls=[ToolCall(name="read", arguments={"path": f"p{next(counter)}"})])

    model = ScriptedModel([next_round(), next_round(), ModelResponse(text="   ")])

    outcome = await _controller(max_tool_steps=2).run(model, executor, next_round())

    assert outcome.stop_reason == STOP_MAX_STEPS
    assert outcome.steps == 2
    assert outcome.used_fallback is True
    assert outcome.text.startswith(
        "I completed tool work but could not produce a full final response (max tool steps reached)."
    )
    assert "- read: chunk" in outcome.text
    assert "Unresolved tool calls: read." in outcome.text


@pytest.mark.asyncio
async def test_empty_final_answer_after_tools_uses_fallback():
    async def executor(call):
        return "listing"

    model = ScriptedModel([ModelResponse(text="")])
    first = ModelResponse(text="Let me look.", tool_calls=[ToolCall(name="glob", arguments={"pattern": "*"})])

    outcome = await _controller().run(model, executor, first)

    assert outcome.stop_reason == STOP_COMPLETED
    assert outcome.used_fallback is True
    assert "(empty final response)" in outcome.text


@pytest.mark.asyncio
async def test_model_error_mid_loop_stops_with_fallback():
    async def executor(call):
        return "data"

    model = ScriptedModel([RuntimeError("provider down")])
    first = ModelResponse(tool_calls=[ToolCall(name="grep", arguments={"pattern": "x"})])

    outcome = await _controller().run(model, executor, first)

    assert outcome.stop_reason == STOP_MODEL_ERROR
    assert outcome.forced_synthesis is False
    assert "(model follow-up failed)" in outcome.text


@pytest.mark.asyncio
async def test_large_outputs_are_compacted_between_rounds():
    async def executor(call):
        return "z" * 10_000

    model = ScriptedModel([ModelResponse(text="summarized")])
    first = ModelResponse(tool_calls=[ToolCall(name="read", arguments={"path": "big.log"})])

    outcome = await _controller().run(model, executor, first)

    assert outcome.compacted_items == 1
    sent_output = model.calls[0][0][-1]["output"]
    assert len(sent_output) < 3000
    assert "[Tool output trimmed: kept first 1200 and last 600 of 10000 chars.]" in sent_output
    assert outcome.tool_results[0].output == "z" * 10_000


@pytest.mark.asyncio
async def test_tool_required_prompt_is_nudged_once():
    async def executor(call):
        return "hello"

    model = ScriptedModel([
        ModelResponse(tool_calls=[ToolCall(name="read", arguments={"path": "notes.md"})]),
        ModelResponse(text="The file says hello."),
    ])

    outcome = await _controller().run(
        model,
        executor,
        ModelResponse(text="Sure, the file says hi."),
        user_prompt="Read notes.md and tell me what it says",
    )

    assert outcome.nudges == 1
    assert outcome.text == "The file says hello."
    nudge_items = model.calls[0][0]
    assert nudge_items[-2] == {"role": "assistant", "content": "Sure, the file says hi."}
    assert "(workspace_file_action). Attempt 1." in nudge_items[-1]["content"]


@pytest.mark.asyncio
async def test_no_nudge_for_plain_questions():
    async def executor(call):
        raise AssertionError("no tools expected")

    model = ScriptedModel([])

    outcome = await _controller().run(
        model, executor, ModelResponse(text="Paris."), user_prompt="What is the capital of France?"
    )

    assert outcome.nudges == 0
    assert outcome.text == "Paris."
    assert model.calls == []

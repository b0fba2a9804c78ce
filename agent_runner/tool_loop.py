"""Multi-round tool execution governed by ``tool_policy``.

The model transport and the tool executors are injected: ``model`` is an
async callable ``(transcript, tools_enabled) -> ModelResponse`` and
``executor`` is an async callable ``(ToolCall) -> output`` that raises on
failure.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from agent_runner.config import ToolsConfig
from agent_runner.logging import get_logger
from agent_runner.tool_intent import build_tool_execution_nudge_prompt, detect_tool_execution_requirement
from agent_runner.tool_policy import (
    ToolCall,
    ToolClassifier,
    ToolResult,
    build_forced_synthesis_prompt,
    build_tool_outcome_fallback,
    compact_tool_conversation_items,
    normalize_tool_call_arguments,
    normalize_tool_round_signature,
    should_retry_idempotent_tool_call,
)

log = get_logger(__name__)

STOP_COMPLETED = "completed"
STOP_LOOP_DETECTED = "repeated identical tool round"
STOP_MAX_STEPS = "max tool steps reached"
STOP_MODEL_ERROR = "model follow-up failed"


@dataclass
class ModelResponse:
    """What one model call produced."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ToolLoopOutcome:
    """Final state of a tool loop."""

    text: str
    stop_reason: str
    steps: int = 0
    rounds: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)
    pending_calls: list[ToolCall] = field(default_factory=list)
    transcript: list[Any] = field(default_factory=list)
    compacted_items: int = 0
    forced_synthesis: bool = False
    used_fallback: bool = False
    nudges: int = 0


ModelCall = Callable[[list[Any], bool], Awaitable[ModelResponse]]
ToolExecutor = Callable[[ToolCall], Awaitable[Any]]


def _render_output(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


class ToolLoopController:
    """Runs tool rounds until the model answers, loops, or exhausts its budget."""

    def __init__(self, classifier: ToolClassifier | None = None, tool_cfg: ToolsConfig | None = None):
        self.tool_cfg = tool_cfg or ToolsConfig()
        self.classifier = classifier or ToolClassifier.from_config(self.tool_cfg)

    async def _execute_call(self, call: ToolCall, executor: ToolExecutor) -> ToolResult:
        normalized = normalize_tool_call_arguments(call.name, call.arguments)
        if not normalized.ok:
            log.warning("Rejected tool call", tool=call.name, reason=normalized.malformed_reason)
            return ToolResult(
                name=call.name,
                ok=False,
                error=f"Malformed arguments: {normalized.malformed_reason}",
            )
        call = ToolCall(name=call.name, arguments=normalized.arguments, id=call.id)

        max_attempts = max(1, self.tool_cfg.max_attempts)
        attempt = 1
        while True:
            try:
                output = await executor(call)
                return ToolResult(name=call.name, ok=True, output=_render_output(output))
            except Exception as e:
                error = str(e) or e.__class__.__name__
                if not should_retry_idempotent_tool_call(
                    call.name, error, attempt, max_attempts, classifier=self.classifier
                ):
                    log.info("Tool call failed", tool=call.name, attempt=attempt, error=error)
                    return ToolResult(name=call.name, ok=False, error=error)
                log.info("Retrying tool call", tool=call.name, attempt=attempt, error=error)
                await asyncio.sleep(self.tool_cfg.retry_backoff_ms * attempt / 1000.0)
                attempt += 1

    async def _execute_round(self, calls: list[ToolCall], executor: ToolExecutor) -> list[ToolResult]:
        # Calls in one round run concurrently; results keep call order.
        return list(await asyncio.gather(*(self._execute_call(call, executor) for call in calls)))

    @staticmethod
    def _round_items(calls: list[ToolCall], results: list[ToolResult]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        for idx, (call, result) in enumerate(zip(calls, results)):
            call_id = call.id or f"call_{idx}"
            items.append({
                "type": "function_call",
                "call_id": call_id,
                "name": call.name,
                "arguments": call.arguments,
            })
            output = result.output if result.ok else json.dumps({"error": result.error}, ensure_ascii=False)
            items.append({"type": "function_call_output", "call_id": call_id, "output": output or ""})
        return items

    async def run(
        self,
        model: ModelCall,
        executor: ToolExecutor,
        initial_response: ModelResponse,
        transcript: list[Any] | None = None,
        user_prompt: str | None = None,
    ) -> ToolLoopOutcome:
        """Drive tool rounds starting from the model's first response.

        Args:
            model: Async model call; second argument False means tools are disabled
            executor: Async tool executor; raising marks the call as failed
            initial_response: Response to the initial (already sent) model call
            transcript: Input items the initial call was made with
            user_prompt: Original user prompt, used to decide whether to nudge
                a tool-less answer toward tool use

        Returns:
            ToolLoopOutcome with the final text and loop bookkeeping
        """
        items: list[Any] = list(transcript or [])
        response = initial_response
        text = response.text or ""
        pending = list(response.tool_calls)
        results: list[ToolResult] = []
        seen_rounds: set[str] = set()
        stop_reason = STOP_COMPLETED
        steps = 0
        rounds = 0
        compacted_total = 0
        nudges = 0

        if not pending and user_prompt and self.tool_cfg.max_nudges > 0:
            requirement = detect_tool_execution_requirement(user_prompt)
            while requirement.required and not pending and nudges < self.tool_cfg.max_nudges:
                nudges += 1
                log.info("Nudging model toward tool use", reason=requirement.reason, attempt=nudges)
                if text:
                    items.append({"role": "assistant", "content": text})
                items.append({
                    "role": "user",
                    "content": build_tool_execution_nudge_prompt(requirement.reason, nudges),
                })
                try:
                    response = await model(items, True)
                except Exception as e:
                    log.warning("Nudge call failed", error=str(e))
                    break
                if response.text:
                    text = response.text
                pending = list(response.tool_calls)

        while pending:
            if steps >= self.tool_cfg.max_tool_steps:
                stop_reason = STOP_MAX_STEPS
                break
            signature = normalize_tool_round_signature(pending)
            if signature in seen_rounds:
                stop_reason = STOP_LOOP_DETECTED
                log.warning("Tool loop detected", rounds=rounds, calls=[c.name for c in pending])
                break
            seen_rounds.add(signature)

            log.info("Executing tool round", round=rounds, calls=[c.name for c in pending])
            round_results = await self._execute_round(pending, executor)
            rounds += 1
            steps += len(pending)
            results.extend(round_results)
            items.extend(self._round_items(pending, round_results))
            items, compacted = compact_tool_conversation_items(items, self.tool_cfg.compaction)
            compacted_total += compacted

            try:
                response = await model(items, True)
            except Exception as e:
                log.warning("Follow-up model call failed", step=steps, error=str(e))
                stop_reason = STOP_MODEL_ERROR
                pending = []
                break
            text = response.text or ""
            pending = list(response.tool_calls)

        forced = False
        if stop_reason in (STOP_LOOP_DETECTED, STOP_MAX_STEPS):
            forced = True
            items.append({
                "role": "user",
                "content": build_forced_synthesis_prompt(stop_reason, pending, results),
            })
            try:
                synthesis = await model(items, False)
                if synthesis.text and synthesis.text.strip():
                    text = synthesis.text
            except Exception as e:
                log.warning("Forced synthesis failed", reason=stop_reason, error=str(e))

        used_fallback = False
        if not text.strip() and (results or pending):
            fallback_reason = stop_reason if stop_reason != STOP_COMPLETED else "empty final response"
            text = build_tool_outcome_fallback(fallback_reason, results, pending)
            used_fallback = True

        return ToolLoopOutcome(
            text=text,
            stop_reason=stop_reason,
            steps=steps,
            rounds=rounds,
            tool_results=results,
            pending_calls=pending if stop_reason != STOP_COMPLETED else [],
            transcript=items,
            compacted_items=compacted_total,
            forced_synthesis=forced,
            used_fallback=used_fallback,
            nudges=nudges,
        )

"""Agent orchestrator -- drives one request through Understand/Plan/Act/Verify.

Composes the conversation context, lifecycle, approval registry and
change manager with an external ModelService and ToolExecutor. Each
phase runs the bounded request/tool sub-loop; a tool call that needs
human sign-off suspends the request until approve/reject and
continue_after_approval() resume it.

One in-flight call per instance. Callers serialize (see api.sessions).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from anvil.agent.approval import ApprovalItem, ApprovalManager
from anvil.agent.changes import ChangeManager
from anvil.agent.context import ContextConfig, ConversationContext
from anvil.agent.lifecycle import Lifecycle, Phase, PlanStep
from anvil.agent.planning import contains_plan, extract_plan_steps, indicates_action
from anvil.agent.teaching import (
    TeachingConfig,
    TeachingMode,
    code_review_explanation,
    concept_explanation,
    teaching_prompt_addition,
    why_question,
)
from anvil.config import Settings
from anvil.events import EventBus, EventType
from anvil.llm.tokens import TokenTracker
from anvil.llm.types import (
    CompletionRequest,
    CompletionResponse,
    ErrorType,
    LLMError,
    Message,
    ModelService,
    Role,
    StreamEvent,
    ToolDefinition,
    Usage,
)
from anvil.schemas import ToolCall, ToolResult, extract_tool_calls, render_tool_call

logger = logging.getLogger(__name__)

VERIFY_PROMPT = "Please verify the changes made and confirm everything is working correctly."
PROCEED_PROMPT = "Please proceed."

StreamHandler = Callable[[StreamEvent], Awaitable[None] | None]


class ToolExecutor(Protocol):
    """Runs tool calls. A result carrying ``approval`` has not run yet."""

    def tool_definitions(self) -> list[ToolDefinition]: ...

    async def execute(
        self,
        call: ToolCall,
        *,
        approved: bool = False,
        timeout: float | None = None,
    ) -> ToolResult: ...


@dataclass
class Response:
    """Outcome of one process_request / continue_after_approval call."""

    message: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    requires_approval: bool = False
    pending_approvals: list[ApprovalItem] = field(default_factory=list)
    done: bool = False
    error: str | None = None
    phase: Phase = Phase.UNDERSTAND
    plan: list[PlanStep] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "tool_calls": [c.model_dump(mode="json") for c in self.tool_calls],
            "tool_results": [r.model_dump(mode="json") for r in self.tool_results],
            "requires_approval": self.requires_approval,
            "pending_approvals": [a.to_dict() for a in self.pending_approvals],
            "done": self.done,
            "error": self.error,
            "phase": str(self.phase),
            "plan": [s.to_dict() for s in self.plan],
        }


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AgentError(Exception):
    """Request-level failure. ``response`` holds what was gathered so far."""

    def __init__(self, message: str, response: Response | None = None) -> None:
        super().__init__(message)
        self.response = response


class ModelServiceError(AgentError):
    """The model service failed (after its own retries)."""

    def __init__(self, error: LLMError, response: Response | None = None) -> None:
        super().__init__(f"model request failed: {error}", response)
        self.error_type: ErrorType = error.error_type
        self.retryable = error.retryable


class LoopExhaustedError(AgentError):
    pass


class PendingApprovalsError(AgentError):
    pass


@dataclass
class _LoopOutcome:
    text: str
    suspended: bool = False
    failed: bool = False


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AgentOrchestrator:
    """Top-level driver for a single session."""

    def __init__(
        self,
        model: ModelService,
        tools: ToolExecutor,
        settings: Settings | None = None,
        *,
        context: ConversationContext | None = None,
        lifecycle: Lifecycle | None = None,
        approvals: ApprovalManager | None = None,
        changes: ChangeManager | None = None,
        bus: EventBus | None = None,
        session_id: str | None = None,
        on_stream: StreamHandler | None = None,
    ) -> None:
        settings = settings or Settings()
        self._settings = settings
        self._model = model
        self._tools = tools
        self._context = context or ConversationContext(
            ContextConfig(
                max_messages=settings.context_max_messages,
                max_tokens=settings.context_max_tokens,
                chars_per_token=settings.context_chars_per_token,
            )
        )
        self._lifecycle = lifecycle or Lifecycle()
        self._approvals = approvals or ApprovalManager()
        self._changes = changes
        self._bus = bus
        self._on_stream = on_stream
        self._stream = settings.stream or on_stream is not None
        self._tokens = TokenTracker()
        self._teaching = TeachingConfig.for_mode(TeachingMode(settings.teaching_mode))
        self._max_iterations = settings.max_iterations
        self._prompted_phase: Phase | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.session_id = session_id

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def context(self) -> ConversationContext:
        return self._context

    @property
    def lifecycle(self) -> Lifecycle:
        return self._lifecycle

    @property
    def approvals(self) -> ApprovalManager:
        return self._approvals

    @property
    def changes(self) -> ChangeManager | None:
        return self._changes

    @property
    def token_tracker(self) -> TokenTracker:
        return self._tokens

    @property
    def teaching_config(self) -> TeachingConfig:
        return self._teaching

    def set_teaching_mode(self, mode: TeachingMode | str) -> None:
        if not isinstance(mode, TeachingMode):
            mode = TeachingMode.parse(mode)
        self._teaching = TeachingConfig.for_mode(mode)

    # ------------------------------------------------------------------
    # Caller surface
    # ------------------------------------------------------------------

    async def process_request(self, text: str) -> Response:
        """Run a new user request until done, suspended, or failed."""
        self._context.add_message(Message(Role.USER, text))
        self._lifecycle.set_phase(Phase.UNDERSTAND)
        self._lifecycle.set_plan([])
        self._prompted_phase = None
        await self._emit(EventType.REQUEST_STARTED, {"message": text[:200]})
        return await self._drive()

    async def continue_after_approval(self) -> Response:
        """Re-enter the phase loop where it suspended."""
        if self._approvals.has_pending():
            raise PendingApprovalsError(
                f"{self._approvals.pending_count()} approval(s) still pending"
            )
        self._approvals.clear_resolved()
        return await self._drive()

    async def approve_tool_call(self, approval_id: str) -> ToolResult:
        """Mark approved and run the tool, bypassing the executor's gate.

        Raises ApprovalError for unknown or already-resolved ids. A tool
        failure is recorded in context and returned, never raised.
        """
        item = self._approvals.approve(approval_id)
        call = item.tool_call
        try:
            result = await self._tools.execute(
                call, approved=True, timeout=self._settings.tool_timeout
            )
        except Exception as e:
            logger.warning("Approved tool %s raised: %s", call.name, e)
            result = ToolResult(tool_call_id=call.id, success=False, error=str(e))

        if result.success:
            note = f"Tool {call.name} approved and executed:\n{result.output}"
        else:
            note = f"Tool {call.name} approved but failed: {result.error}"
        self._context.add_message(Message(Role.USER, note))
        await self._emit(EventType.APPROVAL_RESOLVED, {
            "approval_id": approval_id,
            "tool": call.name,
            "status": "approved",
            "success": result.success,
        })
        return result

    async def reject_tool_call(self, approval_id: str, reason: str = "") -> ApprovalItem:
        item = self._approvals.reject(approval_id, reason)
        self._context.add_message(
            Message(Role.USER, f"Tool {item.tool_call.name} rejected: {reason or 'no reason given'}")
        )
        await self._emit(EventType.APPROVAL_RESOLVED, {
            "approval_id": approval_id,
            "tool": item.tool_call.name,
            "status": "rejected",
            "reason": reason,
        })
        return item

    async def approve_all(self) -> list[ToolResult]:
        return [await self.approve_tool_call(item.id) for item in self._approvals.get_pending()]

    async def reject_all(self, reason: str = "") -> list[ApprovalItem]:
        return [await self.reject_tool_call(item.id, reason) for item in self._approvals.get_pending()]

    def reset(self) -> None:
        """Clear context, lifecycle and approvals for a fresh session."""
        self._context.clear()
        self._lifecycle.reset()
        self._approvals.clear()
        if self._changes is not None:
            self._changes.discard_current_change_set()
        self._prompted_phase = None

    # Teaching helpers

    async def ask_why(self, change: str, context: str = "") -> Response:
        return await self.process_request(why_question(change, context))

    async def explain_concept(self, concept: str, related_code: str = "") -> Response:
        return await self.process_request(concept_explanation(concept, related_code))

    async def review_code(self, code: str, issues: list[str] | None = None) -> Response:
        return await self.process_request(code_review_explanation(code, issues))

    # ------------------------------------------------------------------
    # Phase loop
    # ------------------------------------------------------------------

    async def _drive(self) -> Response:
        self._bind_loop()
        response = Response()
        try:
            await self._run_phases(response)
        except LLMError as e:
            response.error = str(e)
            self._snapshot(response)
            await self._emit(EventType.REQUEST_FAILED, {"error": str(e), "error_type": str(e.error_type)})
            raise ModelServiceError(e, response) from e
        except LoopExhaustedError as e:
            response.error = str(e)
            response.done = True
            self._snapshot(response)
            e.response = response
            await self._emit(EventType.REQUEST_FAILED, {"error": str(e)})
            raise

        self._snapshot(response)
        if response.requires_approval:
            await self._emit(EventType.APPROVAL_REQUIRED, {
                "approval_ids": [a.id for a in response.pending_approvals],
            })
        else:
            await self._emit(EventType.REQUEST_COMPLETED, {
                "phase": str(response.phase),
                "tool_calls": len(response.tool_calls),
            })
        return response

    async def _run_phases(self, response: Response) -> None:
        while True:
            phase = self._lifecycle.current_phase()
            logger.debug("Session %s phase: %s", self.session_id, phase)

            if phase == Phase.UNDERSTAND:
                outcome = await self._sub_loop(response)
                if outcome.suspended:
                    return
                reply = self._last_assistant_text()
                if contains_plan(reply):
                    self._lifecycle.set_phase(Phase.PLAN)
                elif indicates_action(reply):
                    self._lifecycle.set_phase(Phase.ACT)
                else:
                    # A simple answer needs neither a plan nor verification
                    response.done = True
                    self._lifecycle.set_phase(Phase.VERIFY)
                    return

            elif phase == Phase.PLAN:
                steps = extract_plan_steps(self._last_assistant_text())
                self._lifecycle.set_plan(steps)
                logger.info("Plan with %d step(s)", len(steps))
                self._lifecycle.set_phase(Phase.ACT)

            elif phase == Phase.ACT:
                if not self._lifecycle.get_plan():
                    if self._prompted_phase != Phase.ACT:
                        self._prompted_phase = Phase.ACT
                        if self._last_role() == Role.ASSISTANT:
                            self._context.add_message(Message(Role.USER, PROCEED_PROMPT))
                    outcome = await self._sub_loop(response)
                    if outcome.suspended:
                        return
                    self._lifecycle.set_phase(Phase.VERIFY)
                    continue

                step = self._lifecycle.current_step()
                if step is None:
                    step = self._lifecycle.start_next_step()
                    if step is None:
                        self._lifecycle.set_phase(Phase.VERIFY)
                        continue
                    logger.info("Executing step %d: %s", step.id + 1, step.description)
                    self._context.add_message(
                        Message(Role.USER, f"Execute step {step.id + 1}: {step.description}")
                    )
                try:
                    outcome = await self._sub_loop(response)
                except (LLMError, LoopExhaustedError) as e:
                    self._lifecycle.fail_current_step(str(e))
                    raise
                if outcome.suspended:
                    return
                if outcome.failed:
                    self._lifecycle.fail_current_step("all tool calls failed")
                else:
                    self._lifecycle.complete_current_step(outcome.text)

            elif phase == Phase.VERIFY:
                if self._prompted_phase != Phase.VERIFY:
                    self._prompted_phase = Phase.VERIFY
                    self._context.add_message(Message(Role.USER, VERIFY_PROMPT))
                outcome = await self._sub_loop(response)
                if outcome.suspended:
                    return
                response.done = True
                return

    async def _sub_loop(self, response: Response) -> _LoopOutcome:
        """Model call -> tool dispatch, bounded by max_iterations."""
        for iteration in range(self._max_iterations):
            reply = await self._call_model(self._build_request())
            self._context.add_message(Message(Role.ASSISTANT, reply.content))
            response.message = reply.content

            calls = reply.tool_calls or extract_tool_calls(reply.content)
            logger.debug("Iteration %d: %d tool call(s)", iteration, len(calls))
            if not calls:
                return _LoopOutcome(text=reply.content)
            response.tool_calls.extend(calls)

            executed = 0
            pending = []
            for call in calls:
                result = await self._execute(call)
                if result is None:
                    continue
                if result.approval is not None:
                    pending.append((call, result.approval))
                    continue
                executed += 1
                response.tool_results.append(result)
                if result.success:
                    self._context.add_message(
                        Message(Role.USER, f"Tool {call.name} result:\n{result.output}")
                    )
                else:
                    self._context.add_message(
                        Message(Role.USER, f"Tool {call.name} failed: {result.error}")
                    )

            if pending:
                self._approvals.add_pending(pending)
                response.requires_approval = True
                response.pending_approvals = self._approvals.get_pending()
                return _LoopOutcome(text=reply.content, suspended=True)

            if executed == 0:
                return _LoopOutcome(text=reply.content, failed=True)

        raise LoopExhaustedError(
            f"agent loop exceeded maximum iterations ({self._max_iterations})"
        )

    async def _execute(self, call: ToolCall) -> ToolResult | None:
        """Run one call through the executor; None if the executor raised."""
        try:
            return await self._tools.execute(call, timeout=self._settings.tool_timeout)
        except Exception as e:
            logger.warning("Tool %s failed: %s", call.name, e)
            self._context.add_message(Message(Role.USER, f"Tool {call.name} failed: {e}"))
            return None

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    def _build_request(self) -> CompletionRequest:
        system_prompt = self._settings.system_prompt
        addition = teaching_prompt_addition(self._teaching)
        if addition:
            system_prompt = f"{system_prompt}\n\n{addition}" if system_prompt else addition
        return CompletionRequest(
            messages=self._context.get_messages(),
            tools=self._tools.tool_definitions(),
            system_prompt=system_prompt,
            temperature=self._settings.temperature,
            max_tokens=self._settings.max_tokens,
            model=self._settings.model,
        )

    async def _call_model(self, request: CompletionRequest) -> CompletionResponse:
        if self._stream:
            reply = await self._stream_completion(request)
        else:
            reply = await self._model.complete(request)
        self._tokens.add_usage(reply.usage)
        return reply

    async def _stream_completion(self, request: CompletionRequest) -> CompletionResponse:
        """Consume a streamed reply on this task.

        The transport may fire the callback from any thread, so events are
        marshalled onto the loop through a queue and only this task mutates
        state.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()

        def on_event(event: StreamEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        producer = asyncio.create_task(self._model.stream(request, on_event))
        producer.add_done_callback(lambda _: loop.call_soon_threadsafe(queue.put_nowait, None))

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        usage = Usage()
        stop_reason = "end_turn"
        try:
            while (event := await queue.get()) is not None:
                if event.type == "text_delta":
                    text_parts.append(event.text)
                elif event.type == "tool_call" and event.tool_call is not None:
                    tool_calls.append(event.tool_call)
                elif event.type == "done":
                    stop_reason = event.stop_reason or stop_reason
                    usage = event.usage or usage
                if self._on_stream is not None:
                    result = self._on_stream(event)
                    if inspect.isawaitable(result):
                        await result
            await producer
        finally:
            if not producer.done():
                producer.cancel()

        content = "".join(text_parts)
        rendered = [render_tool_call(c) for c in tool_calls]
        if rendered:
            content = "\n".join([content, *rendered]) if content else "\n".join(rendered)
        return CompletionResponse(
            content=content,
            tool_calls=tool_calls,
            stop_reason=stop_reason,
            usage=usage,
            model=request.model or "",
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _last_assistant_text(self) -> str:
        for message in reversed(self._context.get_messages()):
            if message.role == Role.ASSISTANT:
                return message.content
        return ""

    def _last_role(self) -> Role | None:
        recent = self._context.get_recent_messages(1)
        return recent[0].role if recent else None

    def _snapshot(self, response: Response) -> None:
        response.phase = self._lifecycle.current_phase()
        response.plan = self._lifecycle.get_plan()

    def _bind_loop(self) -> None:
        """Attach the prune callback to this event loop (once)."""
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        if self._bus is not None:
            self._context.set_prune_callback(self._on_pruned)

    def _on_pruned(self, pruned: list[Message], summary: str) -> None:
        # Runs on the context's callback thread
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(
            self._emit(EventType.CONTEXT_PRUNED, {"count": len(pruned), "summary": summary}),
            loop,
        )

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._bus is None:
            return
        await self._bus.publish(event_type, self.session_id, **data)

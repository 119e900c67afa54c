"""LangGraph tool-call orchestration loop for the booking agent.

Architecture:
  One user turn runs a LangGraph StateGraph with four nodes:

    1. **agent**      model call with the booking tools bound; counts
                      iterations
    2. **tools**      validates, auto-fills, conflict-checks and executes
                      every proposed tool call, then folds the results
                      into the ``ConversationStore``
    3. **guard**      truthfulness check on the final text answer
    4. **exhausted**  terminal apology once the iteration ceiling is hit

  Routing:
    agent → (tool calls, under the ceiling) → tools → agent (loop)
          → (tool calls, at the ceiling)    → exhausted → END
          → (final text)                    → guard → END

  Two stores are involved.  LangGraph's MemorySaver keeps the model-facing
  transcript per ``thread_id`` (= session id).  The ``ConversationStore``
  is the authoritative record of what is known and what actually ran;
  validation, auto-fill and the guard read only from it.

  Nothing here holds a lock across an await except the per-session turn
  lock, which keeps one session's messages in arrival order.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any

from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.checkpoint.memory import MemorySaver
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from pydantic import BaseModel
from typing_extensions import TypedDict

from booking_agent.config import GUARD_AUTO_EXECUTE, MAX_TOOL_ITERATIONS
from booking_agent.extraction.semantic import SemanticExtractor
from booking_agent.llm import build_tool_llm, content_text
from booking_agent.models import API_DATETIME_FORMAT, Channel, Intent, Role, Stage
from booking_agent.prompts import get_system_prompt
from booking_agent.scheduling.conflicts import ConflictPolicy, detect_conflicts
from booking_agent.scheduling.resources import ResourceContextCache
from booking_agent.services.booking_client import BookingAPIError, ToolExecutor, get_booking_client
from booking_agent.services.metrics import metrics
from booking_agent.state.store import ConversationStore, summarize
from booking_agent.tools.guard import (
    ClaimKind,
    correct_reply,
    match_slot,
    parse_slots,
    unsupported_claims,
)
from booking_agent.tools.registry import (
    TOOL_SPECS,
    ToolName,
    apply_autofill,
    invalid_parameters,
    missing_parameters,
    normalize_arguments,
    refusal,
    resolve_call,
    tool_definitions,
)

logger = logging.getLogger(__name__)

ITERATION_LIMIT_MESSAGE = (
    "I'm sorry, I wasn't able to finish that request. Could you tell me once more "
    "what you'd like to do? If it's urgent, please call the office directly."
)


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """The state that flows through the graph for one turn.

    ``messages`` uses the ``add_messages`` reducer and is checkpointed
    across turns.  The other keys are reset by every ``ainvoke`` input.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    session_id: str
    iterations: int
    max_iterations: int
    reply: str
    iteration_limit_reached: bool
    guard_action: str | None


class TurnResult(BaseModel):
    """What one user turn produced, for the channel adapter."""

    session_id: str
    reply: str
    iteration_limit_reached: bool = False
    guard_action: str | None = None
    stage: Stage
    intent: Intent
    missing_required: list[str] = []


@dataclass
class ToolPlan:
    """One proposed tool call after validation, before execution."""

    call_id: str
    raw_name: str
    tool: ToolName | None
    params: dict[str, Any]
    auto_filled: list[str] = field(default_factory=list)
    supplied: list[str] = field(default_factory=list)
    # Set when the call must not reach the backend
    blocked: dict[str, Any] | None = None
    # Set when an identical mutation already succeeded
    already_done: dict[str, Any] | None = None


@dataclass
class ToolOutcome:
    payload: Any
    error: dict[str, Any] | None = None
    executed: bool = False


# ── Conditional edge ─────────────────────────────────────────────────


def should_use_tools(state: AgentState) -> str:
    """Route the model response: run tools, stop at the ceiling, or guard."""
    last_message = state["messages"][-1]
    if getattr(last_message, "tool_calls", None):
        if state["iterations"] >= state["max_iterations"]:
            return "exhausted"
        return "tools"
    return "guard"


def _mutation_key(tool: ToolName, params: dict[str, Any]) -> tuple | None:
    if tool is ToolName.CREATE_APPOINTMENT:
        return (tool.value, params.get("PatNum"), params.get("AptDateTime"))
    if tool is ToolName.UPDATE_APPOINTMENT:
        return (tool.value, params.get("AptNum"), params.get("AptDateTime"))
    if tool is ToolName.CANCEL_APPOINTMENT:
        return (tool.value, params.get("AptNum"))
    return None


def backend_error_payload(tool: str, exc: BookingAPIError) -> dict[str, Any]:
    """Model-facing description of a backend failure (no raw internals)."""
    if exc.validation or not exc.retryable:
        hint = exc.hint or "Check the values with the patient before trying again."
        if "phone" in str(exc).lower():
            hint = "Phone numbers must be exactly 10 digits; ask the patient to repeat theirs."
        return {
            "error": True,
            "retryable": False,
            "action": "MUST_ASK_USER",
            "tool": tool,
            "message": f"The booking system rejected {tool}.",
            "hint": hint,
        }
    return {
        "error": True,
        "retryable": True,
        "tool": tool,
        "message": f"The booking system could not complete {tool} right now.",
        "hint": exc.hint or "Try once more, or offer the patient a different time or room.",
    }


# ── Orchestrator ─────────────────────────────────────────────────────


class BookingOrchestrator:
    """Runs user turns through the compiled graph for one process."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        cache: ResourceContextCache,
        executor: ToolExecutor,
        llm=None,
        extractor: SemanticExtractor | None = None,
        max_iterations: int | None = None,
        guard_auto_execute: bool | None = None,
        conflict_policy: ConflictPolicy | None = None,
        include_meta_tool: bool = False,
    ):
        self.store = store
        self.cache = cache
        self.executor = executor
        self._llm = llm or build_tool_llm(tool_definitions(include_meta_tool=include_meta_tool))
        self._extractor = extractor or SemanticExtractor()
        self.max_iterations = MAX_TOOL_ITERATIONS if max_iterations is None else max_iterations
        self.guard_auto_execute = (
            GUARD_AUTO_EXECUTE if guard_auto_execute is None else guard_auto_execute
        )
        self._conflict_policy = conflict_policy or ConflictPolicy()
        self._checkpointer = MemorySaver()
        self.graph = self._build_graph()

    # ── Public API ───────────────────────────────────────────────────

    async def handle_message(
        self, session_id: str, text: str, channel: Channel | None = None,
    ) -> TurnResult:
        """Process one user message and return the reply for the adapter."""
        self.store.get_or_create(session_id, channel)
        async with self.store.turn(session_id):
            self.store.ingest_user_message(session_id, text)
            self._select_slot_from_reply(session_id, text)

            final = await self.graph.ainvoke(
                {
                    "messages": [HumanMessage(content=text)],
                    "session_id": session_id,
                    "iterations": 0,
                    "max_iterations": self.max_iterations,
                    "reply": "",
                    "iteration_limit_reached": False,
                    "guard_action": None,
                },
                config={
                    "configurable": {"thread_id": session_id},
                    "recursion_limit": self.max_iterations * 2 + 5,
                },
            )

            reply = final["reply"]
            self.store.append_message(session_id, Role.ASSISTANT, reply)
            session = self.store.require(session_id)
            return TurnResult(
                session_id=session_id,
                reply=reply,
                iteration_limit_reached=final["iteration_limit_reached"],
                guard_action=final.get("guard_action"),
                stage=session.stage,
                intent=session.intent,
                missing_required=list(session.missing_required),
            )

    def forget(self, session_id: str) -> None:
        """Drop the checkpointed transcript of an evicted session."""
        self._checkpointer.delete_thread(session_id)

    def evict_idle_sessions(self) -> list[str]:
        evicted = self.store.evict_idle()
        for session_id in evicted:
            self.forget(session_id)
        return evicted

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(AgentState)
        graph.add_node("agent", self._make_agent_node())
        graph.add_node("tools", self._make_tools_node())
        graph.add_node("guard", self._make_guard_node())
        graph.add_node("exhausted", self._make_exhausted_node())

        graph.set_entry_point("agent")
        graph.add_conditional_edges(
            "agent",
            should_use_tools,
            {"tools": "tools", "guard": "guard", "exhausted": "exhausted"},
        )
        graph.add_edge("tools", "agent")
        graph.add_edge("guard", END)
        graph.add_edge("exhausted", END)

        compiled = graph.compile(checkpointer=self._checkpointer)
        logger.debug(
            "Booking graph compiled: max_iterations=%d, guard_auto_execute=%s",
            self.max_iterations, self.guard_auto_execute,
        )
        return compiled

    # ── Node: agent ──────────────────────────────────────────────────

    def _make_agent_node(self):
        async def agent_node(state: AgentState) -> dict:
            session = self.store.require(state["session_id"])
            snapshot = await self.cache.get()
            system = SystemMessage(
                content=get_system_prompt(summarize(session), snapshot, self.store.now),
            )
            t0 = time.perf_counter()
            try:
                response = await self._llm.ainvoke([system] + state["messages"])
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure(
                    "anthropic", "llm_invoke",
                    error_type=type(exc).__name__, latency_ms=elapsed,
                )
                raise
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_success("anthropic", "llm_invoke", latency_ms=elapsed)
            logger.debug(
                "agent iteration %d responded in %.0fms (%d tool calls)",
                state["iterations"] + 1, elapsed, len(getattr(response, "tool_calls", []) or []),
            )
            return {"messages": [response], "iterations": state["iterations"] + 1}

        return agent_node

    # ── Node: tools ──────────────────────────────────────────────────

    def _make_tools_node(self):
        async def tools_node(state: AgentState) -> dict:
            calls = state["messages"][-1].tool_calls
            messages = await self.run_tool_calls(state["session_id"], calls)
            return {"messages": messages}

        return tools_node

    async def run_tool_calls(self, session_id: str, calls: list[dict]) -> list[ToolMessage]:
        """Validate and execute one iteration's tool calls.

        Calls are prepared in order, executed concurrently, then folded
        into the store in the original order before the next model turn.
        """
        plans: list[ToolPlan] = []
        batch_keys: set[tuple] = set()
        for call in calls:
            plans.append(await self._prepare(session_id, call, batch_keys))

        outcomes = await asyncio.gather(
            *(self._execute(plan) for plan in plans), return_exceptions=True,
        )

        messages = []
        failures = []
        for plan, outcome in zip(plans, outcomes):
            if isinstance(outcome, BaseException):
                failures.append(outcome)
                continue
            self._fold(session_id, plan, outcome)
            messages.append(ToolMessage(
                content=json.dumps(outcome.payload, default=str),
                tool_call_id=plan.call_id,
                name=plan.raw_name,
                status="error" if outcome.error else "success",
            ))
        if failures:
            # Finished calls are folded before the first failure propagates
            logger.error(
                "Session %s: %d of %d tool calls raised; first: %r",
                session_id, len(failures), len(plans), failures[0],
            )
            raise failures[0]
        return messages

    async def _prepare(self, session_id: str, call: dict, batch_keys: set[tuple]) -> ToolPlan:
        raw_name = call.get("name", "")
        tool, arguments = resolve_call(raw_name, call.get("args"))
        plan = ToolPlan(
            call_id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
            raw_name=raw_name,
            tool=tool,
            params=arguments,
            supplied=sorted(k for k, v in arguments.items() if v not in (None, "")),
        )
        if tool is None:
            plan.blocked = refusal(
                raw_name or "unknown",
                reason=f"Unknown booking function {arguments.get('function_name', raw_name)!r}.",
            )
            metrics.increment("ToolRefused", Tool="unknown")
            return plan

        spec = TOOL_SPECS[tool]
        session = self.store.require(session_id)
        plan.params, plan.auto_filled = apply_autofill(spec, session, arguments)
        missing = missing_parameters(spec, plan.params)

        recoverable = [
            p for group in missing for p in group.split(" or ") if p in spec.derivable
        ]
        if recoverable:
            await self._semantic_fill(session_id, missing)
            session = self.store.require(session_id)
            plan.params, plan.auto_filled = apply_autofill(spec, session, arguments)
            missing = missing_parameters(spec, plan.params)

        invalid = invalid_parameters(spec, plan.params, self.store.now.date())
        if missing or invalid:
            plan.blocked = refusal(tool.value, missing=missing, invalid=invalid, have=plan.params)
            metrics.increment("ToolRefused", Tool=tool.value)
            logger.info(
                "Session %s: refused %s (missing=%s invalid=%s)",
                session_id, tool.value, missing, list(invalid),
            )
            return plan

        plan.params = normalize_arguments(plan.params)
        if plan.auto_filled:
            logger.debug("Session %s: auto-filled %s for %s", session_id, plan.auto_filled, tool.value)

        if spec.mutating:
            key = _mutation_key(tool, plan.params)
            previous = self._previous_mutation(session_id, tool, plan.params)
            if previous is not None or key in batch_keys:
                plan.already_done = {
                    "status": "already_completed",
                    "tool": tool.value,
                    "message": f"{tool.value} already succeeded for this request; it was not repeated.",
                    "previous_result": previous,
                }
                metrics.increment("DuplicateSuppressed", Tool=tool.value)
                logger.warning("Session %s: suppressed duplicate %s", session_id, tool.value)
                return plan
            batch_keys.add(key)

            if tool in (ToolName.CREATE_APPOINTMENT, ToolName.UPDATE_APPOINTMENT):
                plan.blocked = await self._check_conflicts(session_id, tool, plan.params)
        return plan

    def _previous_mutation(self, session_id: str, tool: ToolName, params: dict[str, Any]) -> Any:
        """Result of an earlier successful mutation this call would repeat, if any."""
        session = self.store.require(session_id)
        key = _mutation_key(tool, params)
        for record in session.tool_calls:
            if record.tool_name != tool.value or not record.succeeded:
                continue
            previous = normalize_arguments(record.parameters)
            if _mutation_key(tool, previous) == key:
                return record.result if record.result is not None else {}
            if session.stage is not Stage.COMPLETED:
                continue
            # A completed session is one logical action: one booking, or one
            # move or cancellation per existing appointment
            if tool is ToolName.CREATE_APPOINTMENT or previous.get("AptNum") == params.get("AptNum"):
                return record.result if record.result is not None else {}
        return None

    async def _semantic_fill(self, session_id: str, missing: list[str]) -> None:
        session = self.store.require(session_id)
        extraction = await self._extractor.extract(session.messages, missing, self.store.now)
        patch = extraction.to_patch(self._extractor.min_confidence)
        if patch:
            self.store.update(session_id, patch, fill_only=True)
            logger.info("Session %s: semantic fallback filled %s", session_id, patch)
        else:
            logger.info("Session %s: semantic fallback found nothing for %s", session_id, missing)

    async def _check_conflicts(
        self, session_id: str, tool: ToolName, params: dict[str, Any],
    ) -> dict[str, Any] | None:
        snapshot = await self.cache.get()
        provider = params.get("ProvNum")
        room = params.get("Op")
        if tool is ToolName.UPDATE_APPOINTMENT:
            # A move keeps the current provider and room unless new ones are given
            existing = next(
                (o for o in snapshot.occupied if o.appointment_id == params.get("AptNum")), None,
            )
            if existing is not None:
                provider = existing.provider_id if provider is None else provider
                room = existing.room_id if room is None else room
            snapshot = snapshot.without_appointment(params.get("AptNum"))
        if provider is None or room is None:
            return None
        session = self.store.require(session_id)

        start = datetime.strptime(params["AptDateTime"], API_DATETIME_FORMAT)
        report = detect_conflicts(
            snapshot, start, provider, room,
            params.get("PatNum", session.patient.patient_id),
            policy=self._conflict_policy,
        )
        if not report.has_conflict:
            return None

        metrics.increment("ConflictRejected", Tool=tool.value)
        logger.info("Session %s: %s blocked by conflicts %s", session_id, tool.value, report.reasons)
        return {
            "error": True,
            "retryable": True,
            "tool": tool.value,
            "message": "That time is not available.",
            "conflicts": report.reasons,
            "suggestions": list(report.suggestions),
            "alternative_room": report.alternative_room_id,
            "alternative_provider": report.alternative_provider_id,
            "hint": "Offer the patient an alternative room, provider or time, then retry.",
        }

    async def _execute(self, plan: ToolPlan) -> ToolOutcome:
        if plan.blocked is not None:
            return ToolOutcome(payload=plan.blocked, error=plan.blocked)
        if plan.already_done is not None:
            return ToolOutcome(
                payload=plan.already_done,
                error={"duplicate": True, "message": plan.already_done["message"]},
            )
        try:
            result = await self.executor.execute(plan.tool.value, plan.params)
        except BookingAPIError as exc:
            logger.warning("Booking API %s failed: %s", plan.tool.value, exc)
            payload = backend_error_payload(plan.tool.value, exc)
            return ToolOutcome(payload=payload, error=payload, executed=True)
        return ToolOutcome(payload=result, executed=True)

    def _fold(self, session_id: str, plan: ToolPlan, outcome: ToolOutcome) -> None:
        self.store.record_tool_call(
            session_id,
            plan.tool.value if plan.tool else plan.raw_name,
            plan.params,
            result=outcome.payload if outcome.error is None else None,
            error=outcome.error,
            auto_filled=plan.auto_filled,
            supplied=plan.supplied,
        )
        if outcome.error is None and plan.tool is not None and TOOL_SPECS[plan.tool].mutating:
            self.cache.invalidate()

    # ── Node: guard ──────────────────────────────────────────────────

    def _make_guard_node(self):
        async def guard_node(state: AgentState) -> dict:
            last = state["messages"][-1]
            text = content_text(last.content)
            reply, action = await self.apply_guard(state["session_id"], text)
            update: dict[str, Any] = {"reply": reply, "guard_action": action}
            if reply != text:
                # Same id: the reducer replaces the false claim in the transcript
                update["messages"] = [AIMessage(content=reply, id=last.id)]
            return update

        return guard_node

    async def apply_guard(self, session_id: str, text: str) -> tuple[str, str | None]:
        """Return ``(reply, action)``; ``action`` is ``None`` when untouched."""
        session = self.store.require(session_id)
        claims = unsupported_claims(text, session)
        if not claims:
            return text, None

        logger.warning("Session %s: unsupported success claim %s", session_id, sorted(claims))
        if self.guard_auto_execute and await self._recover(session_id, claims):
            if not unsupported_claims(text, self.store.require(session_id)):
                metrics.increment("GuardCorrection", Outcome="executed")
                return text, "executed"

        slots = parse_slots(self.store.presented_slots(session_id))
        metrics.increment("GuardCorrection", Outcome="stripped")
        return correct_reply(text, claims, slots), "stripped"

    async def _recover(self, session_id: str, claims: set[ClaimKind]) -> bool:
        """Execute the mutation the model claimed, if the patient clearly chose a slot."""
        if claims == {ClaimKind.CANCEL}:
            return False
        session = self.store.require(session_id)
        last_user = session.last_user_message()
        if last_user is None:
            return False

        slots = parse_slots(self.store.presented_slots(session_id))
        chosen = match_slot(last_user.text, slots, self.store.now.date())
        if chosen is None:
            return False
        self.store.select_slot(session_id, chosen)

        reschedule = ClaimKind.RESCHEDULE in claims or session.intent is Intent.RESCHEDULE
        tool = ToolName.UPDATE_APPOINTMENT if reschedule else ToolName.CREATE_APPOINTMENT
        call = {"id": f"guard_{uuid.uuid4().hex[:12]}", "name": tool.value, "args": {}}
        plan = await self._prepare(session_id, call, set())
        outcome = await self._execute(plan)
        self._fold(session_id, plan, outcome)
        logger.info(
            "Session %s: guard executed %s for %s -> %s",
            session_id, tool.value, chosen.api_datetime, "ok" if outcome.error is None else "failed",
        )
        return outcome.error is None and outcome.executed

    def _select_slot_from_reply(self, session_id: str, text: str) -> None:
        slots = parse_slots(self.store.presented_slots(session_id))
        if not slots:
            return
        chosen = match_slot(text, slots, self.store.now.date())
        current = self.store.require(session_id).appointment.selected_slot
        if chosen is not None and chosen != current:
            self.store.select_slot(session_id, chosen)

    # ── Node: exhausted ──────────────────────────────────────────────

    def _make_exhausted_node(self):
        def exhausted_node(state: AgentState) -> dict:
            session_id = state["session_id"]
            calls = state["messages"][-1].tool_calls
            notes = []
            for call in calls:
                error = {"error": True, "message": "Not executed: step limit reached for this turn."}
                self.store.record_tool_call(
                    session_id, call.get("name", ""), call.get("args") or {}, error=error,
                )
                notes.append(ToolMessage(
                    content=json.dumps(error), tool_call_id=call["id"], status="error",
                ))
            metrics.increment("IterationLimit")
            logger.warning(
                "Session %s: iteration ceiling (%d) reached; %d tool calls dropped",
                session_id, state["max_iterations"], len(calls),
            )
            return {
                "messages": notes + [AIMessage(content=ITERATION_LIMIT_MESSAGE)],
                "reply": ITERATION_LIMIT_MESSAGE,
                "iteration_limit_reached": True,
            }

        return exhausted_node


# ── Factory ──────────────────────────────────────────────────────────


def create_booking_agent(
    *,
    store: ConversationStore | None = None,
    executor: ToolExecutor | None = None,
) -> BookingOrchestrator:
    """Build an orchestrator wired to the configured backend and models."""
    executor = executor or get_booking_client()
    orchestrator = BookingOrchestrator(
        store=store or ConversationStore(),
        cache=ResourceContextCache(executor),
        executor=executor,
    )
    logger.debug("Booking agent ready (%d tools)", len(TOOL_SPECS))
    return orchestrator

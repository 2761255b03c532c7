"""Stage Resolver / Dispatcher.

Architecture:
  Every tool call runs through a small LangGraph StateGraph whose
  checkpointer holds the call's ``ConversationState`` between turns
  (one thread per call id):

    1. **resolve**   : load (or start) the call's state, check the tool
                       exists, is legal in the current stage and that its
                       arguments validate
    2. **<tool>**    : one node per tool; runs the handler and folds its
                       update in through ``state.apply_update``

  Routing:
    resolve → (rejected?)   → END
    resolve → (accepted?)   → <tool> → END

  Every exception a handler lets escape is turned into a structured
  outcome here, and on an exception the stored state is left exactly as
  it was.  The (stage, tool) table in ``state.TOOL_STAGES`` and the
  handler table below must name the same tools; ``build_graph`` refuses
  to build otherwise.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from langgraph.graph import END, StateGraph
from pydantic import BaseModel, ValidationError
from typing_extensions import TypedDict

from voice_booking.config import (
    CALL_IDLE_TIMEOUT_SECONDS,
    CALL_SWEEP_INTERVAL_SECONDS,
    PRACTICES_FILE,
)
from voice_booking.errors import (
    STAFF_FOLLOW_UP,
    BookingError,
    ErrorCategory,
    InvariantViolation,
    message_for,
)
from voice_booking.practice import PracticeDirectory
from voice_booking.services.metrics import metrics
from voice_booking.services.nexhealth_client import SchedulingAPIError, get_nexhealth_client
from voice_booking.services.store import ConversationStore
from voice_booking.services.text_matcher import build_text_matcher
from voice_booking.state import TOOL_STAGES, ConversationState, apply_update, is_tool_allowed
from voice_booking.tools.appointment_type import handle_find_appointment_type
from voice_booking.tools.availability import handle_check_available_slots
from voice_booking.tools.base import (
    BookingServices,
    CheckAvailableSlotsArgs,
    ConfirmBookingArgs,
    FindAppointmentTypeArgs,
    HandlerResult,
    IdentifyOrCreatePatientArgs,
    InsuranceInfoArgs,
    SelectAndConfirmSlotArgs,
    ToolContext,
)
from voice_booking.tools.booking import handle_confirm_booking, handle_select_and_confirm_slot
from voice_booking.tools.insurance import handle_insurance_info
from voice_booking.tools.patient import handle_identify_or_create_patient

logger = logging.getLogger(__name__)

Handler = Callable[[ConversationState, Any, ToolContext], HandlerResult]

# ── Handler table ────────────────────────────────────────────────────

HANDLERS: dict[str, tuple[type[BaseModel], Handler]] = {
    "find_appointment_type": (FindAppointmentTypeArgs, handle_find_appointment_type),
    "check_available_slots": (CheckAvailableSlotsArgs, handle_check_available_slots),
    "select_and_confirm_slot": (SelectAndConfirmSlotArgs, handle_select_and_confirm_slot),
    "confirm_booking": (ConfirmBookingArgs, handle_confirm_booking),
    "identify_or_create_patient": (IdentifyOrCreatePatientArgs, handle_identify_or_create_patient),
    "insurance_info": (InsuranceInfoArgs, handle_insurance_info),
}

TOOL_DESCRIPTIONS = {
    "find_appointment_type": "Match what the patient needs to an appointment type and offer times.",
    "check_available_slots": "Search for open times, optionally on a given day or time of day.",
    "select_and_confirm_slot": "Pick one of the offered times from what the patient said.",
    "confirm_booking": "Read the patient's answer to the restated appointment and book it.",
    "identify_or_create_patient": "Find the patient's record by name and date of birth, or create one.",
    "insurance_info": "Say whether the practice is in network with the patient's insurance.",
}


# ── State schema ─────────────────────────────────────────────────────


class DispatchState(TypedDict, total=False):
    """The state that flows through the graph.

    ``conversation`` is the persisted ``ConversationState`` (JSON form)
    and is the only key that matters across turns.  ``tool_call``,
    ``route`` and ``outcome`` are per-turn plumbing.
    """

    conversation: dict[str, Any] | None
    tool_call: dict[str, Any]
    route: str
    outcome: dict[str, Any]


def _outcome(
    state: ConversationState,
    message: str,
    *,
    success: bool,
    error_code: str | None = None,
    error_category: ErrorCategory | None = None,
) -> dict[str, Any]:
    return {
        "success": success,
        "message": message,
        "stage": state.current_stage.value,
        "error_code": error_code,
        "error_category": error_category.value if error_category else None,
    }


def _reject(state: ConversationState, code: str, category: ErrorCategory) -> dict[str, Any]:
    return {
        "conversation": state.model_dump(mode="json"),
        "route": END,
        "outcome": _outcome(
            state, message_for(code), success=False, error_code=code, error_category=category,
        ),
    }


# ── Node: resolve ────────────────────────────────────────────────────


def _resolve_node(state: DispatchState) -> dict:
    call = state["tool_call"]
    stored = state.get("conversation")
    conversation = (
        ConversationState.model_validate(stored)
        if stored
        else ConversationState.start(call["call_id"], call["practice_id"])
    )

    if conversation.practice_id != call["practice_id"]:
        logger.error(
            "Call %s belongs to practice %s, not %s",
            call["call_id"], conversation.practice_id, call["practice_id"],
        )
        return _reject(conversation, "PRACTICE_MISMATCH", ErrorCategory.CONFIGURATION)

    tool_name = call["tool_name"]
    if tool_name not in HANDLERS:
        logger.warning("Call %s: unknown tool %r", call["call_id"], tool_name)
        return _reject(conversation, "UNKNOWN_TOOL", ErrorCategory.INTERNAL)

    if not is_tool_allowed(tool_name, conversation.current_stage):
        logger.warning(
            "Call %s: %s not allowed in stage %s",
            call["call_id"], tool_name, conversation.current_stage.value,
        )
        return _reject(conversation, "TOOL_NOT_ALLOWED_IN_STAGE", ErrorCategory.INTERNAL)

    args_model, _ = HANDLERS[tool_name]
    try:
        args_model.model_validate(call.get("arguments") or {})
    except ValidationError as exc:
        logger.info("Call %s: invalid arguments for %s: %s", call["call_id"], tool_name, exc)
        return _reject(conversation, "INVALID_ARGUMENTS", ErrorCategory.USER_INPUT)

    return {"conversation": conversation.model_dump(mode="json"), "route": tool_name}


# ── Node: one per tool ───────────────────────────────────────────────


def _make_handler_node(tool_name: str, services: BookingServices):
    """Create the node that runs *tool_name*'s handler."""
    args_model, handler = HANDLERS[tool_name]

    def handler_node(state: DispatchState) -> dict:
        conversation = ConversationState.model_validate(state["conversation"])
        call = state["tool_call"]
        args = args_model.model_validate(call.get("arguments") or {})

        try:
            ctx = ToolContext(
                practice=services.directory.get(conversation.practice_id),
                services=services,
                now=services.clock(),
            )
            result = handler(conversation, args, ctx)
            new_state = apply_update(conversation, result.update)
        except InvariantViolation as exc:
            logger.error("INVARIANT VIOLATION in %s (call %s): %s", tool_name, conversation.call_id, exc.detail)
            outcome = _outcome(
                conversation, exc.message, success=False,
                error_code=exc.code, error_category=exc.category,
            )
        except BookingError as exc:
            logger.warning("%s failed for call %s: %s", tool_name, conversation.call_id, exc.code)
            outcome = _outcome(
                conversation, exc.message, success=False,
                error_code=exc.code, error_category=exc.category,
            )
        except SchedulingAPIError as exc:
            logger.warning("Scheduling system error in %s (call %s): %s", tool_name, conversation.call_id, exc)
            outcome = _outcome(
                conversation, STAFF_FOLLOW_UP, success=False,
                error_code="SCHEDULING_UNAVAILABLE", error_category=ErrorCategory.SYSTEM,
            )
        except Exception:
            logger.exception("Unexpected error in %s (call %s)", tool_name, conversation.call_id)
            outcome = _outcome(
                conversation, message_for("INTERNAL_ERROR"), success=False,
                error_code="INTERNAL_ERROR", error_category=ErrorCategory.INTERNAL,
            )
        else:
            if new_state.current_stage != conversation.current_stage:
                logger.info(
                    "Call %s: %s -> %s", conversation.call_id,
                    conversation.current_stage.value, new_state.current_stage.value,
                )
            conversation = new_state
            outcome = _outcome(
                conversation, result.message, success=result.success,
                error_code=result.error_code, error_category=result.error_category,
            )

        return {"conversation": conversation.model_dump(mode="json"), "outcome": outcome}

    return handler_node


# ── Conditional edges ────────────────────────────────────────────────


def route_tool_call(state: DispatchState) -> str:
    return state.get("route") or END


# ── Graph assembly ───────────────────────────────────────────────────


def build_graph(services: BookingServices, store: ConversationStore):
    """Build and compile the dispatch graph.

    Raises:
        ValueError: the (stage, tool) table and the handler table do not
            name the same tools.
    """
    missing_handlers = set(TOOL_STAGES) - set(HANDLERS)
    missing_stages = set(HANDLERS) - set(TOOL_STAGES)
    if missing_handlers or missing_stages:
        raise ValueError(
            f"tool tables disagree: no handler for {sorted(missing_handlers)}, "
            f"no stage entry for {sorted(missing_stages)}"
        )

    graph = StateGraph(DispatchState)
    graph.add_node("resolve", _resolve_node)
    for tool_name in HANDLERS:
        graph.add_node(tool_name, _make_handler_node(tool_name, services))
        graph.add_edge(tool_name, END)

    graph.set_entry_point("resolve")
    graph.add_conditional_edges(
        "resolve",
        route_tool_call,
        {**{name: name for name in HANDLERS}, END: END},
    )

    compiled = graph.compile(checkpointer=store.checkpointer)
    logger.debug("Dispatch graph compiled with %d tools", len(HANDLERS))
    return compiled


# ── Public entry point ───────────────────────────────────────────────


class ToolCallDispatcher:
    """Runs tool calls against per-call conversation state."""

    def __init__(
        self,
        services: BookingServices,
        store: ConversationStore | None = None,
        *,
        idle_timeout: float = CALL_IDLE_TIMEOUT_SECONDS,
        sweep_interval: float = CALL_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.services = services
        self.store = store or ConversationStore()
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._graph = build_graph(services, self.store)
        self._next_sweep = 0.0
        self._sweep_guard = threading.Lock()

    def _stored_conversation(self, call_id: str) -> dict[str, Any] | None:
        snapshot = self._graph.get_state(self.store.thread_config(call_id))
        return (snapshot.values or {}).get("conversation") if snapshot else None

    def sweep_idle_calls(self, *, skip: str | None = None) -> list[str]:
        """Archive and release calls idle for longer than ``idle_timeout``.

        Covers calls whose front end never ended them (dropped lines,
        crashes).  Returns the released call ids.
        """
        released = []
        for call_id in self.store.idle_calls(self.idle_timeout):
            if call_id == skip:
                continue
            with self.store.locked(call_id):
                if not self.store.is_idle(call_id, self.idle_timeout):
                    continue
                stored = self._stored_conversation(call_id)
                if stored:
                    self.store.archive(call_id, stored, keep_live_on_failure=False)
                else:
                    self.store.forget(call_id)
            released.append(call_id)
        if released:
            logger.info("Released %d idle call(s): %s", len(released), ", ".join(released))
        return released

    def _maybe_sweep(self, current_call_id: str) -> None:
        now = time.monotonic()
        with self._sweep_guard:
            if now < self._next_sweep:
                return
            self._next_sweep = now + self.sweep_interval
        self.sweep_idle_calls(skip=current_call_id)

    def dispatch(
        self,
        call_id: str,
        practice_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Process one tool call and return its outcome.

        The outcome always has ``success``, ``message`` and ``stage``;
        failures also carry ``error_code`` and ``error_category``.
        """
        t0 = time.perf_counter()
        self._maybe_sweep(call_id)
        with self.store.locked(call_id):
            ended = self.store.archived(call_id)
            if ended is not None:
                logger.warning("Tool call %s for ended call %s", tool_name, call_id)
                archived = ConversationState.model_validate(ended)
                outcome = _outcome(
                    archived, message_for("CALL_ENDED"), success=False,
                    error_code="CALL_ENDED", error_category=ErrorCategory.INTERNAL,
                )
            else:
                result = self._graph.invoke(
                    {
                        "tool_call": {
                            "call_id": call_id,
                            "practice_id": practice_id,
                            "tool_name": tool_name,
                            "arguments": arguments or {},
                        },
                        "route": END,
                        "outcome": {},
                    },
                    config=self.store.thread_config(call_id),
                )
                outcome = result["outcome"]
                self.store.touch(call_id)

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_tool_call(
            tool_name, "success" if outcome["success"] else outcome.get("error_category") or "failure",
            latency_ms=elapsed,
        )
        logger.info(
            "Call %s: %s -> %s (%s, %.0fms)",
            call_id, tool_name, "ok" if outcome["success"] else outcome.get("error_code"),
            outcome["stage"], elapsed,
        )
        return outcome

    def get_state(self, call_id: str) -> ConversationState | None:
        """Current state of a live or ended call, or ``None`` if unknown."""
        stored = self._stored_conversation(call_id)
        if stored:
            return ConversationState.model_validate(stored)
        archived = self.store.archived(call_id)
        return ConversationState.model_validate(archived) if archived else None

    def end_call(self, call_id: str) -> ConversationState | None:
        """Archive the call's final state and drop it from live storage.

        If the archive refuses the snapshot the call stays live, so a
        later tool call still sees its state.
        """
        with self.store.locked(call_id):
            stored = self._stored_conversation(call_id)
            if not stored:
                self.store.forget(call_id)
                return None
            self.store.archive(call_id, stored)
        return ConversationState.model_validate(stored)

    @staticmethod
    def tool_definitions() -> list[dict[str, Any]]:
        """Name, description, legal stages and argument schema of each tool."""
        return [
            {
                "name": name,
                "description": TOOL_DESCRIPTIONS.get(name, ""),
                "stages": sorted(stage.value for stage in TOOL_STAGES[name]),
                "parameters": args_model.model_json_schema(),
            }
            for name, (args_model, _) in HANDLERS.items()
        ]


def build_dispatcher(store: ConversationStore | None = None) -> ToolCallDispatcher:
    """Wire the dispatcher from configuration."""
    services = BookingServices(
        directory=PracticeDirectory.from_file(PRACTICES_FILE),
        scheduling=get_nexhealth_client(),
        text_matcher=build_text_matcher(),
    )
    return ToolCallDispatcher(services, store)

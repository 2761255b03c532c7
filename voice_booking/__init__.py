"""Voice Booking Agent: the booking state machine behind a dental voice receptionist.

Architecture Overview
=====================

A voice front end (an LLM-driven phone agent) turns each conversational
turn into a **tool call**: a call id, a tool name and JSON arguments.
This package owns everything after that point.

1. **Dispatcher** (``orchestrator.py``): a LangGraph StateGraph that
   loads the call's state from the checkpointer, checks the tool is
   legal in the current stage and routes to exactly one handler.

2. **Handlers** (``tools/``): one per tool.  Each reads the state,
   talks to the scheduling system or the text matcher, and returns a
   message plus a partial state update.  Handlers never mutate state.

3. **Reducer** (``state.apply_update``): folds the update in and rejects
   anything that would break a conversation invariant (illegal stage
   edge, a selected slot that was never offered, a confirmed booking
   without an appointment id).

Stages: INITIAL → OFFERING_SLOTS / NO_AVAILABILITY → AWAITING_SLOT_CONFIRMATION
→ AWAITING_PATIENT_DETAILS → AWAITING_FINAL_CONFIRMATION → BOOKING_CONFIRMED

Key Design Decisions
--------------------
- **Scheduling**: NexHealth REST API via httpx.  Reads are retried at most
  once; writes never are, so a timeout can't create a duplicate booking.
- **Text matching**: Claude Haiku behind the ``TextMatcher`` protocol, always
  answering from a closed candidate set.  A deterministic keyword matcher
  implements the same protocol for tests and offline use.
- **Memory**: LangGraph's MemorySaver, one thread per call id, with a
  per-call lock around each read-modify-write.  Ended calls move to a
  byte-bounded LRU archive.
- **Dual Interface**: FastAPI server (production) + CLI simulator (development).

Package Structure
-----------------
- ``voice_booking/orchestrator.py``: Stage Resolver / Dispatcher graph
- ``voice_booking/state.py``: conversation state, stage edges, reducer
- ``voice_booking/practice.py``: practice configuration
- ``voice_booking/dates.py``: date normalization and spoken formatting
- ``voice_booking/errors.py``: error taxonomy and spoken messages
- ``voice_booking/config.py``: configuration from environment variables / SSM
- ``voice_booking/services/``: scheduling client, matchers, search, store, metrics
- ``voice_booking/tools/``: one handler per tool
- ``voice_booking/api/``: FastAPI routes and Pydantic schemas
- ``voice_booking/server.py``: FastAPI application
- ``voice_booking/main.py``: CLI tool-call simulator
"""

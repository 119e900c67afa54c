"""Booking agent: an LLM-driven appointment booking core for a dental practice.

Architecture Overview
=====================

A patient message from any channel (voice, SMS, chat, web) becomes one
*turn*.  Each turn:

1. **Extraction**: regex extractors pull name, phone, birthdate,
   appointment type, date/time preference and intent from the message and
   merge them into the session (``state/store.py``).  Merges never erase a
   known value.

2. **Orchestration**: a LangGraph StateGraph (``agent.py``) calls Claude
   with the booking tools bound.  Every proposed tool call is resolved
   against a closed catalogue, auto-filled from session state, validated,
   conflict-checked and only then sent to the practice-management backend.
   Calls that cannot run come back to the model as ``MUST_ASK_USER``.

3. **Truthfulness guard**: a final answer that claims a booking which no
   successful tool call supports is either repaired (the patient clearly
   chose a presented slot, so the booking is executed) or rewritten into
   a confirmation question.

Key Design Decisions
--------------------
- **LLM**: Claude via ``langchain_anthropic``; a smaller model handles the
  one-shot JSON fallback extraction.
- **Backend**: a single JSON endpoint (``functionName`` + ``parameters``),
  called through ``httpx`` with exponential-backoff retries on timeouts and
  5xx responses.
- **Resources**: providers, rooms and occupied slots are cached with a TTL,
  fetched in parallel, and degrade to a last-good or minimal snapshot.
- **Memory**: ``ConversationStore`` is authoritative; MemorySaver only keeps
  the model transcript.
- **Dual Interface**: FastAPI server (production) + CLI chat loop.

Package Structure
-----------------
- ``booking_agent/agent.py`` - orchestration graph
- ``booking_agent/config.py`` - configuration from env vars / SSM
- ``booking_agent/models.py`` - session and resource models
- ``booking_agent/prompts.py`` - system and extraction prompts
- ``booking_agent/extraction/`` - pattern and semantic extraction
- ``booking_agent/scheduling/`` - resource cache and conflict detection
- ``booking_agent/state/`` - conversation store
- ``booking_agent/tools/`` - tool catalogue and truthfulness guard
- ``booking_agent/services/`` - backend client, retry, metrics
- ``booking_agent/api/`` - FastAPI routes and schemas
"""

"""Orchestration core.

Module Overview
---------------

**model_metadata.py**
    Length-based token estimation.

**context_assembler.py**
    Budget-bounded prompt assembly: system, summary, pinned, newest tail.

**reference_detector.py**
    GitLab URL detection in user messages.

**prefetcher.py**
    Canonical project resolution and concurrent overview/listing prefetch
    through the tool gateway.

**tool_steps.py**
    The model <-> tool loop as an explicit state machine with step telemetry.

**summarizer.py / tickets.py**
    Structured thread summaries and ticket-mode payload parsing.

**orchestrator.py**
    ChatOrchestrator, which composes all of the above for one user turn.

Modules depend on ``threadloom_constants``, ``providers`` and ``tools``;
nothing under ``providers`` or ``tools`` imports the orchestrator.
"""

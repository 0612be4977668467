"""Thread/message storage boundary.

The orchestration core never owns persistence. It talks to a ``Storage``
implementation through five async calls and treats each as atomic and
strongly consistent. ``InMemoryStorage`` is the reference implementation
used by the CLI and the test-suite.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

ROLES = ("user", "assistant", "system")


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class Message:
    id: str
    thread_id: str
    role: str
    content: str
    pinned: bool = False
    created_at: datetime = field(default_factory=_now)
    model: Optional[str] = None
    tickets_json: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Thread:
    id: str
    title: str
    summary_text: Optional[str] = None
    summary_model: Optional[str] = None
    summary_updated_at: Optional[datetime] = None
    summary_json: Optional[Dict[str, Any]] = None
    default_model: Optional[str] = None
    turn_count: int = 0
    token_estimate: int = 0
    created_at: datetime = field(default_factory=_now)


class Storage(Protocol):
    async def get_thread(self, thread_id: str) -> Optional[Thread]: ...

    async def list_messages(self, thread_id: str) -> List[Message]: ...

    async def create_message(
        self,
        *,
        thread_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        tickets_json: Optional[Dict[str, Any]] = None,
    ) -> Message: ...

    async def patch_thread(self, thread_id: str, **changes: Any) -> Thread: ...

    async def set_pinned(self, message_id: str, pinned: bool) -> Message: ...


class InMemoryStorage:
    """Dict-backed Storage. Insertion order is message order."""

    def __init__(self):
        self._threads: Dict[str, Thread] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._lock = asyncio.Lock()

    async def create_thread(self, title: str = "New chat", **fields: Any) -> Thread:
        thread = Thread(id=fields.pop("id", None) or uuid.uuid4().hex, title=title, **fields)
        async with self._lock:
            self._threads[thread.id] = thread
            self._messages.setdefault(thread.id, [])
        return thread

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        return self._threads.get(thread_id)

    async def list_messages(self, thread_id: str) -> List[Message]:
        return list(self._messages.get(thread_id, []))

    async def create_message(
        self,
        *,
        thread_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        tickets_json: Optional[Dict[str, Any]] = None,
        pinned: bool = False,
    ) -> Message:
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role}")
        if thread_id not in self._threads:
            raise KeyError(f"Unknown thread: {thread_id}")
        msg = Message(
            id=uuid.uuid4().hex,
            thread_id=thread_id,
            role=role,
            content=content,
            pinned=pinned,
            model=model,
            tickets_json=tickets_json,
        )
        async with self._lock:
            self._messages[thread_id].append(msg)
        return msg

    async def patch_thread(self, thread_id: str, **changes: Any) -> Thread:
        async with self._lock:
            thread = self._threads[thread_id]
            if "turn_count" in changes and changes["turn_count"] < thread.turn_count:
                raise ValueError("turn_count never decreases")
            updated = replace(thread, **changes)
            self._threads[thread_id] = updated
        return updated

    async def set_pinned(self, message_id: str, pinned: bool) -> Message:
        async with self._lock:
            for thread_id, msgs in self._messages.items():
                for i, msg in enumerate(msgs):
                    if msg.id == message_id:
                        msgs[i] = replace(msg, pinned=pinned)
                        return msgs[i]
        raise KeyError(f"Unknown message: {message_id}")

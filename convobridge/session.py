"""Call session management for ConvoBridge.

Each active call gets a CallSession that tracks its state, owns both
transports, and holds the identifiers collected during the call. The
SessionRegistry maps connection identity to session for every live call.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from convobridge.core.events import CallLocation
from convobridge.transcripts import ToolInvocation
from convobridge.transports.base import BaseTransport


class SessionState(str, Enum):
    CREATED = "created"
    AWAITING_START = "awaiting_start"
    BRIDGING = "bridging"
    DRAINING = "draining"
    CLOSED = "closed"


# Forward-only ordering of the states
_STATE_ORDER = {state: index for index, state in enumerate(SessionState)}


@dataclass
class CallSession:
    """Represents a single active call flowing through the bridge.

    Each call has:
    - A downstream (telephony) transport, accepted by the server
    - An upstream (conversational AI) transport, opened on stream start
    - Identifiers: stream SID, call SID, caller identity, conversation id
    """

    # Unique session identifier (the registry key)
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Transports
    downstream: BaseTransport | None = None
    upstream: BaseTransport | None = None

    # Call metadata from the telephony side
    stream_sid: str = ""
    call_sid: str = ""
    caller_identity: str = ""
    location: CallLocation = field(default_factory=CallLocation)
    custom_parameters: dict[str, str] = field(default_factory=dict)

    # Set once by the AI service's initiation metadata
    _conversation_id: str | None = None

    # Filled by the finalizer
    tool_invocations: list[ToolInvocation] = field(default_factory=list)

    # State
    state: SessionState = SessionState.CREATED
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None
    close_reason: str = ""

    # Counters
    audio_chunks_in: int = 0
    audio_chunks_out: int = 0
    dropped_chunks: int = 0

    # Asyncio tasks for the relay loops
    _tasks: list[asyncio.Task] = field(default_factory=list)

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    def set_conversation_id(self, conversation_id: str) -> bool:
        """Record the AI conversation id. Only the first value sticks.

        Returns:
            True if the id was recorded, False if one was already set.
        """
        if self._conversation_id is not None:
            if conversation_id != self._conversation_id:
                self.log.warning(
                    f"Ignoring second conversation id {conversation_id} "
                    f"(already {self._conversation_id})"
                )
            return False
        self._conversation_id = conversation_id
        return True

    def transition(self, new_state: SessionState) -> bool:
        """Move forward to ``new_state``. Backward moves are ignored."""
        if _STATE_ORDER[new_state] <= _STATE_ORDER[self.state]:
            return False
        self.log.debug(f"State {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state is SessionState.CLOSED:
            self.ended_at = time.time()
        return True

    @property
    def is_active(self) -> bool:
        """True until teardown begins."""
        return _STATE_ORDER[self.state] < _STATE_ORDER[SessionState.DRAINING]

    @property
    def is_bridging(self) -> bool:
        return self.state is SessionState.BRIDGING

    @property
    def log(self):
        """Logger bound to this call's identifiers."""
        return logger.bind(
            session_id=self.session_id,
            caller=self.caller_identity,
            conversation_id=self._conversation_id or "",
        )

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Register a relay task so teardown can cancel it."""
        self._tasks.append(task)
        return task

    def cancel_tasks(self) -> list[asyncio.Task]:
        """Cancel every relay task still running. Returns the cancelled tasks."""
        current = asyncio.current_task()
        cancelled = []
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
                cancelled.append(task)
        self._tasks.clear()
        return cancelled

    @property
    def duration_ms(self) -> int:
        """Call duration in milliseconds."""
        end = self.ended_at or time.time()
        return int((end - self.started_at) * 1000)


class SessionRegistry:
    """Thread-safe registry of active call sessions.

    One lock guards insertion, removal and iteration; nothing else is
    shared between sessions.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, CallSession] = {}
        self._lock = threading.Lock()

    def create(self, **kwargs) -> CallSession:
        """Create and register a new session."""
        session = CallSession(**kwargs)
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info(f"[Registry] Session created: {session.session_id}")
        return session

    def get(self, session_id: str) -> CallSession | None:
        """Get a session by session_id."""
        with self._lock:
            return self._sessions.get(session_id)

    def get_by_caller(self, caller_identity: str) -> list[CallSession]:
        """All live sessions for a caller's number."""
        with self._lock:
            return [s for s in self._sessions.values() if s.caller_identity == caller_identity]

    def remove(self, session_id: str) -> CallSession | None:
        """Remove a session from the registry. Safe to call twice."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session:
            logger.info(
                f"[Registry] Session removed: {session.session_id} "
                f"(duration: {session.duration_ms}ms)"
            )
        return session

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    @property
    def active_count(self) -> int:
        """Number of sessions not yet tearing down."""
        with self._lock:
            return sum(1 for s in self._sessions.values() if s.is_active)

    @property
    def all_sessions(self) -> list[CallSession]:
        """Snapshot of every registered session."""
        with self._lock:
            return list(self._sessions.values())

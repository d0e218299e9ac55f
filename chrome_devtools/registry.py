"""Registry of the sessions multiplexed over one connection.

The root browser session is keyed by ``None``; attached target sessions are
keyed by the session id Chrome assigned. Each entry knows its parent, its
children and the event subscriptions registered for it.

All methods are synchronous and run on the event loop thread, so every
mutation is atomic with respect to the dispatcher's read loop.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

from .exceptions import AttachFailedError, SessionClosedError

if TYPE_CHECKING:
    from .dispatcher import EventSubscription

logger = logging.getLogger(__name__)


class SessionState(Enum):
    ATTACHING = "attaching"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(eq=False)
class SessionEntry:
    """Registry record of one session."""

    session_id: Optional[str]
    target_id: Optional[str] = None
    target_type: Optional[str] = None
    browser_context_id: Optional[str] = None
    parent: Optional["SessionEntry"] = None
    state: SessionState = SessionState.ATTACHING
    children: List["SessionEntry"] = field(default_factory=list)
    subscriptions: List["EventSubscription"] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def is_root(self) -> bool:
        return self.parent is None and self.session_id is None

    def descendants(self) -> List["SessionEntry"]:
        """Children first-to-last, depth first."""
        result = []
        for child in self.children:
            result.append(child)
            result.extend(child.descendants())
        return result


class SessionRegistry:
    """Tree of sessions sharing one dispatcher."""

    def __init__(self):
        self._entries: Dict[Optional[str], SessionEntry] = {}
        self.root = SessionEntry(session_id=None, state=SessionState.OPEN)
        self._entries[None] = self.root

    def __contains__(self, session_id: Optional[str]) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, session_id: Optional[str]) -> Optional[SessionEntry]:
        return self._entries.get(session_id)

    def is_open(self, session_id: Optional[str]) -> bool:
        entry = self._entries.get(session_id)
        return entry is not None and entry.is_open

    def open_sessions(self) -> List[SessionEntry]:
        return [entry for entry in self._entries.values() if entry.is_open]

    def begin_attach(
        self, parent: SessionEntry, target_id: str
    ) -> SessionEntry:
        """Create an ``ATTACHING`` entry for a pending attach call.

        Raises:
            SessionClosedError: If the parent session is closed
        """
        if not parent.is_open:
            raise SessionClosedError(
                "Cannot attach from a closed session", session_id=parent.session_id
            )
        return SessionEntry(session_id=None, target_id=target_id, parent=parent)

    def complete_attach(
        self,
        entry: SessionEntry,
        session_id: str,
        target_type: Optional[str] = None,
        browser_context_id: Optional[str] = None,
    ) -> SessionEntry:
        """Register an attaching entry under its assigned id and open it.

        Raises:
            AttachFailedError: If the parent closed while attaching or the id
                is already used by an open session
        """
        parent = entry.parent
        if parent is None or not parent.is_open:
            entry.state = SessionState.CLOSED
            raise AttachFailedError(
                "Parent session closed while attaching", target_id=entry.target_id
            )
        if session_id in self._entries:
            entry.state = SessionState.CLOSED
            raise AttachFailedError(
                f"Session id {session_id} is already in use",
                target_id=entry.target_id,
            )

        entry.session_id = session_id
        entry.target_type = target_type
        entry.browser_context_id = browser_context_id
        entry.state = SessionState.OPEN
        parent.children.append(entry)
        self._entries[session_id] = entry
        logger.debug(
            f"Session {session_id} opened for target {entry.target_id} "
            f"(parent={parent.session_id})"
        )
        return entry

    def abort_attach(self, entry: SessionEntry) -> None:
        entry.state = SessionState.CLOSED

    def add_subscription(
        self, session_id: Optional[str], subscription: "EventSubscription"
    ) -> None:
        """Attach a subscription to an open session.

        Raises:
            SessionClosedError: If the session is unknown or closed
        """
        entry = self._entries.get(session_id)
        if entry is None or not entry.is_open:
            raise SessionClosedError(
                "Cannot subscribe on a closed session", session_id=session_id
            )
        entry.subscriptions.append(subscription)

    def remove_subscription(
        self, session_id: Optional[str], subscription: "EventSubscription"
    ) -> None:
        entry = self._entries.get(session_id)
        if entry is None:
            return
        try:
            entry.subscriptions.remove(subscription)
        except ValueError:
            pass

    def close_tree(
        self, session_id: Optional[str], error: Optional[Exception] = None
    ) -> List[SessionEntry]:
        """Close a session and all its descendants.

        Their entries are removed, so a reused session id never reaches
        stale subscribers. Returns the entries that were closed, root of the
        subtree first.
        """
        entry = self._entries.get(session_id)
        if entry is None or not entry.is_open:
            return []

        closed = [entry] + entry.descendants()
        for item in closed:
            item.state = SessionState.CLOSED
            if item.session_id is not None:
                self._entries.pop(item.session_id, None)
            subscriptions, item.subscriptions = item.subscriptions, []
            for subscription in subscriptions:
                subscription._end(error)
            item.children = []

        if entry.parent is not None:
            try:
                entry.parent.children.remove(entry)
            except ValueError:
                pass

        logger.debug(f"Closed {len(closed)} session(s) rooted at {session_id}")
        return closed

    def close_all(self, error: Optional[Exception] = None) -> List[SessionEntry]:
        """Close every session, the root included."""
        return self.close_tree(None, error)

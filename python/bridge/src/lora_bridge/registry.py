"""Session registry: which agent sessions belong to which project.

The registry outlives client connections. It is rebuilt from the
multiplexer on startup with ``reconcile``; after that its records take
precedence over anything inferred from multiplexer session names.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from .models import AgentSession
from .multiplexer import Multiplexer

logger = logging.getLogger(__name__)

# Separates a project id from the suffix of an additional terminal's session
EXTRA_SESSION_SEPARATOR = "--"


class SessionRegistry:
    """Project -> agent sessions, newest first."""

    def __init__(self, multiplexer: Multiplexer, session_prefix: str = "lora-"):
        """Initialize the registry.

        Args:
            multiplexer: Used to confirm liveness and during reconcile
            session_prefix: Prefix shared by every session the bridge owns
        """
        self.multiplexer = multiplexer
        self.session_prefix = session_prefix
        self._sessions: dict[str, list[AgentSession]] = defaultdict(list)
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, project_id: str) -> asyncio.Lock:
        """Per-project lock held across check-then-create."""
        if project_id not in self._locks:
            self._locks[project_id] = asyncio.Lock()
        return self._locks[project_id]

    def register(self, session: AgentSession) -> AgentSession:
        """Record a new session as the project's newest."""
        self._sessions[session.project_id].insert(0, session)
        logger.info(f"Registered session {session.name} for project {session.project_id}")
        return session

    def find(self, name: str, active_only: bool = True) -> AgentSession | None:
        """Look up a session record by multiplexer name."""
        for records in self._sessions.values():
            for session in records:
                if session.name == name and (session.is_active or not active_only):
                    return session
        return None

    def has_record(self, name: str) -> bool:
        """Whether the registry has ever recorded this name."""
        return self.find(name, active_only=False) is not None

    def mark_inactive(self, name: str) -> None:
        session = self.find(name)
        if session:
            session.is_active = False
            logger.info(f"Session {name} marked inactive")

    async def get_active(self, project_id: str) -> AgentSession | None:
        """Newest active session for a project that the multiplexer confirms alive.

        Records whose sessions have disappeared are marked inactive on the way.
        """
        for session in self._sessions.get(project_id, []):
            if not session.is_active:
                continue
            if await self.multiplexer.session_exists(session.name):
                return session
            session.is_active = False
            logger.info(f"Session {session.name} is gone, marked inactive")
        return None

    def adopt(self, project_id: str, name: str, working_directory: str) -> AgentSession:
        """Register a live multiplexer session the registry did not know about."""
        logger.info(f"Adopting orphaned session {name} for project {project_id}")
        return self.register(AgentSession(
            name=name,
            project_id=project_id,
            working_directory=working_directory,
        ))

    def history(self, project_id: str) -> list[AgentSession]:
        """All sessions ever recorded for a project, newest first."""
        return list(self._sessions.get(project_id, []))

    def active_sessions(self) -> list[AgentSession]:
        return [s for records in self._sessions.values() for s in records if s.is_active]

    def snapshot(self) -> dict[str, list[dict]]:
        """Registry contents for the HTTP API."""
        return {
            project_id: [s.to_dict() for s in records]
            for project_id, records in self._sessions.items()
            if records
        }

    def project_for_name(self, name: str) -> str | None:
        """Derive a project id from a session name we generated."""
        if not name.startswith(self.session_prefix):
            return None
        rest = name[len(self.session_prefix):]
        return rest.split(EXTRA_SESSION_SEPARATOR, 1)[0] or None

    async def reconcile(self) -> int:
        """Sync the registry with the multiplexer after a restart.

        Adopts live prefixed sessions the registry does not know about and
        marks records whose sessions have disappeared inactive.

        Returns:
            Number of sessions adopted
        """
        live = set(await self.multiplexer.list_sessions(self.session_prefix))

        for session in self.active_sessions():
            if session.name not in live:
                session.is_active = False

        adopted = 0
        for name in sorted(live):
            if self.has_record(name):
                continue
            project_id = self.project_for_name(name)
            if project_id is None:
                continue
            cwd = await self.multiplexer.session_directory(name)
            self.adopt(project_id, name, cwd)
            adopted += 1

        if adopted:
            logger.info(f"Reconciled registry: adopted {adopted} live session(s)")
        return adopted

from __future__ import annotations

import json
import time
import uuid
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from portalauth.logging import get_logger
from portalauth.service.errors import SessionNotFoundError
from portalauth.storage.models import Session, User, from_timestamp

logger = get_logger(__name__)


class SessionStore(Protocol):
    async def put_session(
        self, session_id: str, user_id: str, payload: str, ttl_seconds: int
    ) -> None: ...

    async def get_session(self, session_id: str) -> Optional[str]: ...

    async def touch_session(
        self, session_id: str, user_id: str, payload: str, ttl_seconds: int
    ) -> bool: ...

    async def delete_session(self, session_id: str, user_id: Optional[str] = None) -> bool: ...

    async def user_session_ids(self, user_id: str) -> List[str]: ...

    async def forget_user_sessions(self, user_id: str, session_ids: List[str]) -> None: ...

    async def scan_sessions(self) -> List[Tuple[str, str]]: ...


class SessionManager:
    """CRUD over session records in the Sessions partition.

    Session TTL equals the refresh lifetime and slides forward on every
    authenticated request via :meth:`touch`.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def new_session(
        self,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = from_timestamp(self._clock())
        return Session(
            session_id=str(uuid.uuid4()),
            user_id=user.id,
            email=user.email,
            role=user.role,
            organizational_unit_id=user.organizational_unit_id,
            created_at=now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
        )

    async def create(self, session: Session) -> None:
        await self.store.put_session(
            session.session_id,
            session.user_id,
            json.dumps(session.to_dict()),
            self.ttl_seconds,
        )
        logger.info("session_created", session_id=session.session_id, user_id=session.user_id)

    async def find(self, session_id: str) -> Optional[Session]:
        raw = await self.store.get_session(session_id)
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("session_record_corrupt", session_id=session_id)
            return None

    async def get(self, session_id: str) -> Session:
        session = await self.find(session_id)
        if session is None:
            raise SessionNotFoundError("session not found", detail={"session_id": session_id})
        return session

    async def touch(self, session: Session, ttl_seconds: Optional[int] = None) -> bool:
        """Record activity and restart the TTL. Returns False if the session is gone."""
        session.last_activity = from_timestamp(self._clock())
        return await self.store.touch_session(
            session.session_id,
            session.user_id,
            json.dumps(session.to_dict()),
            ttl_seconds or self.ttl_seconds,
        )

    async def delete(self, session_id: str, user_id: Optional[str] = None) -> bool:
        deleted = await self.store.delete_session(session_id, user_id)
        if deleted:
            logger.info("session_deleted", session_id=session_id)
        return deleted

    async def list_by_user(self, user_id: str) -> List[Session]:
        """Live sessions of one user, via the per-user index.

        Index members whose session already expired are pruned on the way.
        """
        session_ids = await self.store.user_session_ids(user_id)
        sessions: List[Session] = []
        stale: List[str] = []
        for session_id in session_ids:
            session = await self.find(session_id)
            if session is None or session.user_id != user_id:
                stale.append(session_id)
                continue
            sessions.append(session)
        if stale:
            await self.store.forget_user_sessions(user_id, stale)
        sessions.sort(key=lambda s: s.created_at)
        return sessions

    async def scan_by_user(self, user_id: str) -> List[str]:
        """Session ids for ``user_id`` found by scanning every session.

        O(total sessions); used to catch sessions missing from the per-user
        index (for example records written before the index existed) when
        a logout-all must be exhaustive.
        """
        found: List[str] = []
        for session_id, raw in await self.store.scan_sessions():
            try:
                if json.loads(raw).get("user_id") == user_id:
                    found.append(session_id)
            except (ValueError, AttributeError):
                continue
        return found

    async def stats(self) -> Dict[str, int]:
        sessions = await self.store.scan_sessions()
        users = set()
        for _, raw in sessions:
            try:
                users.add(json.loads(raw).get("user_id"))
            except (ValueError, AttributeError):
                continue
        return {"active_sessions": len(sessions), "active_users": len(users)}

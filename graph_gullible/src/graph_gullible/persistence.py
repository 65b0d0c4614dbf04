"""
Persistence Gateway

Upserts chat transcripts and A/B group assignments to Supabase.
Every write is best-effort: failures are logged and never reach the
conversation flow. Without a Supabase client the gateway keeps the rows in
memory, which is also what the tests use.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from graph_gullible.errors import PersistenceError

logger = logging.getLogger(__name__)

CHAT_SESSIONS_TABLE = "chat_sessions"
USER_GROUPS_TABLE = "user_groups"


class PersistenceGateway:
    """
    Writes transcript snapshots and group assignments.

    Both writes are idempotent upserts: the transcript is keyed by session id,
    the group by participant email.
    """

    def __init__(self, supabase_client=None):
        """
        Initialize PersistenceGateway.

        Args:
            supabase_client: Supabase client instance (optional)
        """
        self.supabase = supabase_client
        self.use_supabase = supabase_client is not None

        # In-memory fallback, keyed like the hosted tables
        self._in_memory_chats: Dict[str, Dict[str, Any]] = {}
        self._in_memory_groups: Dict[str, Dict[str, Any]] = {}

        # Strong references to scheduled writes until they finish
        self._pending: Set[asyncio.Task] = set()
        # One lock per stored row: writes to the same row land in the order
        # they were scheduled, writes to different rows never wait on each other
        self._row_locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def build_chat_row(
        self,
        session_id: str,
        user_email: str,
        scenario_id: Optional[int],
        scenario_title: str,
        messages: Optional[List[Dict[str, str]]],
    ) -> Dict[str, Any]:
        """Validate and assemble a chat_sessions row."""
        if not session_id or not user_email or scenario_id is None or messages is None:
            raise PersistenceError("Missing required fields")

        return {
            "session_id": session_id,
            "user_email": user_email,
            "scenario_id": scenario_id,
            "scenario_title": scenario_title,
            "messages": list(messages),
            "updated_at": datetime.now().isoformat(),
        }

    def build_group_row(self, user_email: str, group: str) -> Dict[str, Any]:
        """Validate and assemble a user_groups row."""
        if not user_email or not group:
            raise PersistenceError("Missing email or group")
        return {"user_email": user_email, "assigned_group": group}

    def _upsert(self, table: str, row: Dict[str, Any], on_conflict: str) -> None:
        """Blocking upsert; runs in a worker thread when called from the event loop."""
        if not self.use_supabase:
            store = self._in_memory_chats if table == CHAT_SESSIONS_TABLE else self._in_memory_groups
            store[row[on_conflict]] = row
            return

        try:
            self.supabase.table(table).upsert(row, on_conflict=on_conflict).execute()
        except Exception as e:
            raise PersistenceError(f"Upsert into {table} failed: {e}") from e

    async def _write(self, table: str, row: Dict[str, Any], on_conflict: str) -> None:
        async with self._row_locks[(table, str(row[on_conflict]))]:
            await asyncio.to_thread(self._upsert, table, row, on_conflict)

    async def save_chat_session(
        self,
        session_id: str,
        user_email: str,
        scenario_id: Optional[int],
        scenario_title: str,
        messages: Optional[List[Dict[str, str]]],
    ) -> bool:
        """
        Upsert the full transcript for a session.

        Returns:
            True if saved, False otherwise (the failure is logged)
        """
        try:
            row = self.build_chat_row(session_id, user_email, scenario_id, scenario_title, messages)
            await self._write(CHAT_SESSIONS_TABLE, row, "session_id")
            logger.debug(f"💾 [Persistence] Transcript saved ({len(row['messages'])} messages)")
            return True
        except PersistenceError as e:
            logger.error(f"❌ [Persistence] Chat save failed: {e}")
            return False

    async def save_user_group(self, user_email: str, group: str) -> bool:
        """Upsert the participant's A/B group."""
        try:
            row = self.build_group_row(user_email, group)
            await self._write(USER_GROUPS_TABLE, row, "user_email")
            logger.info(f"💾 [Persistence] Group {group} saved")
            return True
        except PersistenceError as e:
            logger.error(f"❌ [Persistence] Group save failed: {e}")
            return False

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def schedule_chat_save(
        self,
        session_id: str,
        user_email: str,
        scenario_id: Optional[int],
        scenario_title: str,
        messages: List[Dict[str, str]],
    ) -> asyncio.Task:
        """Fire-and-forget transcript save. Must be called from a running loop."""
        return self._track(
            self.save_chat_session(session_id, user_email, scenario_id, scenario_title, list(messages))
        )

    def schedule_group_save(self, user_email: str, group: str) -> asyncio.Task:
        """Fire-and-forget group save."""
        return self._track(self.save_user_group(user_email, group))

    async def drain(self) -> None:
        """Wait for every scheduled write (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_chat_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Read back a transcript row from the in-memory fallback."""
        return self._in_memory_chats.get(session_id)

    def get_user_group(self, user_email: str) -> Optional[str]:
        row = self._in_memory_groups.get(user_email)
        return row["assigned_group"] if row else None

"""
Session Id Store

Durable key-value file remembering which session id was allocated for a
(scenario, participant) pair, so returning to a scenario overwrites the same
stored transcript instead of creating a new one.
"""

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = Path.home() / ".graph_gullible" / "session_ids.json"


def session_key(scenario_id: int, user_email: str) -> str:
    return f"gg_session_{scenario_id}_{user_email}"


class SessionIdStore:
    """JSON-file backed map of session keys to session ids."""

    def __init__(self, path: Optional[Path] = None, persist: bool = True):
        """
        Args:
            path: Store file (defaults to GG_SESSION_STORE_PATH or ~/.graph_gullible/session_ids.json)
            persist: Keep ids in memory only when False
        """
        env_path = os.getenv("GG_SESSION_STORE_PATH")
        self.path = Path(path) if path else Path(env_path) if env_path else DEFAULT_STORE_PATH
        self.persist = persist
        self._ids: Dict[str, str] = self._load() if persist else {}
        # get_or_create runs in worker threads
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return {str(k): str(v) for k, v in data.items()}
        except (json.JSONDecodeError, OSError, AttributeError) as e:
            logger.warning(f"⚠️ [SessionIdStore] Ignoring unreadable store {self.path}: {e}")
            return {}

    def _save(self) -> None:
        if not self.persist:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._ids, f, indent=2)
        os.replace(tmp_path, self.path)

    def get(self, scenario_id: int, user_email: str) -> Optional[str]:
        return self._ids.get(session_key(scenario_id, user_email))

    def get_or_create(self, scenario_id: int, user_email: str) -> str:
        """Return the stored id for this pair, allocating a fresh one if absent."""
        key = session_key(scenario_id, user_email)
        with self._lock:
            session_id = self._ids.get(key)
            if session_id:
                return session_id

            session_id = str(uuid.uuid4())
            self._ids[key] = session_id
            self._save()
        logger.info(f"🆕 [SessionIdStore] Allocated session for scenario {scenario_id}")
        return session_id

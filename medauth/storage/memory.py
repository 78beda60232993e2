from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from medauth.logging import get_logger
from medauth.storage.errors import ConstraintViolation
from medauth.storage.models import Account, Role, Session, utcnow


class MemoryStore:
    """In-process store for accounts and durable session rows.

    Used for development and tests. With ``persist=True`` every mutation is
    written to ``<fs_root>/state/memory_store.json`` so a dev server keeps its
    accounts across restarts.
    """

    def __init__(self, fs_root: str = "/tmp/medauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be called while a mutation already holds it
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- accounts -------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.PATIENT,
        profile: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(email, password_hash, role, profile)
            account.is_active = is_active
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def count_accounts(self, role: Optional[Role] = None) -> int:
        with self._data_lock:
            if role is None:
                return len(self.accounts)
            return sum(1 for a in self.accounts.values() if a.role == role)

    def update_account_role(self, account_id: str, role: Role) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_active = is_active
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def update_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.password_hash = password_hash
            account.updated_at = utcnow()
            self._persist_state()

    # -- sessions -------------------------------------------------------

    def save_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def list_user_sessions(self, user_id: str) -> List[Session]:
        now = utcnow()
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and not s.is_expired(now)
            ]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return stale

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- persistence ----------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [a.to_dict() for a in self.accounts.values()],
            "sessions": [s.to_dict() for s in self.sessions.values()],
        }
        path = self._state_path()
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except ValueError as exc:
            self.logger.error("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.accounts = {a["id"]: Account.from_dict(a) for a in data.get("accounts", [])}
        self.sessions = {s["id"]: Session.from_dict(s) for s in data.get("sessions", [])}
        return True

"""Launch context storage that survives the SMART authorization redirect.

The browser leaves the app for the EHR's login page and comes back with a
fresh Streamlit session, so anything kept only in session_state is gone by the
time the callback arrives. FileContextStore writes every change to a JSON file
under the data directory.

Each browser tab gets its own file, named by a random session id. The id
travels in two ways:

- while the user signs in, the anti-CSRF ``state`` is indexed to the id in
  ``pending_states.json`` (single use, short-lived);
- after a successful callback the page keeps the id on its URL as ``sid``.

A tab that carries neither gets a brand-new, empty store, so it can never see
another tab's patient or tokens.

Only the keys in ContextKey are ever read or written.
"""
from __future__ import annotations

import json
import logging
import os
import re
import secrets
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .models import LaunchContext, TokenSet
from .paths import get_launch_context_path, get_pending_states_path, get_session_dir

logger = logging.getLogger(__name__)

SESSION_PARAM = "sid"
# Pending authorizations older than this are dropped (15 minutes)
PENDING_STATE_MAX_AGE = 900
# Tab context files untouched for this long are removed (12 hours)
SESSION_MAX_AGE = 12 * 3600

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


class ContextKey(str, Enum):
    ISSUER = "iss"
    LAUNCH = "launch"
    CODE_VERIFIER = "code_verifier"
    STATE = "state"
    TOKEN_ENDPOINT = "token_endpoint"
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    PATIENT_ID = "patient_id"
    PATIENT_DATA = "patient_data"


KeyLike = Union[ContextKey, str]


def _key(key: KeyLike) -> ContextKey:
    try:
        return ContextKey(key)
    except ValueError:
        raise KeyError(f"unknown launch context key: {key!r}") from None


def query_param(params: Mapping[str, Any], name: str) -> Optional[str]:
    raw = params.get(name)
    # Older Streamlit query params come back as lists
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


def valid_session_id(session_id: Optional[str]) -> bool:
    return bool(session_id) and _SESSION_ID_RE.match(session_id) is not None


def _write_json_atomic(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    try:
        os.chmod(tmp, 0o600)
    except OSError:
        pass
    os.replace(tmp, path)


class ContextStore:
    """In-memory key/value store for one browser tab's launch context."""

    session_id: Optional[str] = None

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: KeyLike) -> Optional[str]:
        return self._data.get(_key(key).value)

    def set(self, key: KeyLike, value: str) -> None:
        k = _key(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError(f"refusing to store an empty value for {k.value!r}")
        self._data[k.value] = str(value)
        self._persist()

    def update(self, values: Dict[KeyLike, str]) -> None:
        """Set several keys with a single durable write."""
        staged = {}
        for key, value in values.items():
            k = _key(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValueError(f"refusing to store an empty value for {k.value!r}")
            staged[k.value] = str(value)
        self._data.update(staged)
        self._persist()

    def delete(self, key: KeyLike) -> None:
        if self._data.pop(_key(key).value, None) is not None:
            self._persist()

    def clear(self) -> None:
        self._data = {}
        self._persist()

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)

    def __contains__(self, key: KeyLike) -> bool:
        return self.get(key) is not None

    def bind_state(self, state: str) -> None:
        """Record that the authorization carrying ``state`` belongs to this store.

        An in-memory store lives and dies with its tab, so there is nothing to do.
        """

    # Convenience views

    def launch_context(self) -> LaunchContext:
        return LaunchContext(
            issuer=self.get(ContextKey.ISSUER),
            launch_token=self.get(ContextKey.LAUNCH),
            code_verifier=self.get(ContextKey.CODE_VERIFIER),
            expected_state=self.get(ContextKey.STATE),
            token_endpoint=self.get(ContextKey.TOKEN_ENDPOINT),
        )

    def token_set(self) -> Optional[TokenSet]:
        access_token = self.get(ContextKey.ACCESS_TOKEN)
        if not access_token:
            return None
        return TokenSet(
            access_token=access_token,
            refresh_token=self.get(ContextKey.REFRESH_TOKEN),
            patient_id=self.get(ContextKey.PATIENT_ID),
        )

    def _persist(self) -> None:
        pass


class FileContextStore(ContextStore):
    """ContextStore backed by a JSON file, rewritten atomically on every change.

    Without an explicit path the file is ``session/ctx_<session_id>.json``;
    omitting session_id as well starts a new tab session.
    """

    def __init__(self, path: Optional[str] = None, session_id: Optional[str] = None) -> None:
        super().__init__()
        if path is None:
            session_id = session_id or new_session_id()
            if not valid_session_id(session_id):
                raise ValueError("invalid session id")
            path = get_launch_context_path(session_id)
        self.session_id = session_id
        self.path = Path(path)
        self._data = self._read()

    def bind_state(self, state: str) -> None:
        if self.session_id:
            save_pending_state(state, self.session_id)

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f) or {}
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable launch context file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        known = {k.value for k in ContextKey}
        return {k: str(v) for k, v in data.items() if k in known and isinstance(v, str) and v}

    def _persist(self) -> None:
        _write_json_atomic(self.path, self._data)


# ---------------- Pending authorizations ---------------- #

def _read_pending() -> dict:
    p = Path(get_pending_states_path())
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f) or {}
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def save_pending_state(state: str, session_id: str) -> None:
    data = _read_pending()
    data[state] = {"sid": session_id, "ts": int(time.time())}
    _write_json_atomic(Path(get_pending_states_path()), data)


def pop_session_for_state(state: str, max_age_seconds: int = PENDING_STATE_MAX_AGE) -> Optional[str]:
    """Return and remove the session id waiting on ``state`` if present and fresh."""
    data = _read_pending()
    now = int(time.time())
    entry = data.pop(state, None)
    session_id: Optional[str] = None
    if isinstance(entry, dict) and now - int(entry.get("ts", 0)) <= max_age_seconds:
        session_id = entry.get("sid")
    # Opportunistic cleanup of old entries
    for k, v in list(data.items()):
        if not isinstance(v, dict) or now - int(v.get("ts", 0)) > max_age_seconds:
            data.pop(k, None)
    _write_json_atomic(Path(get_pending_states_path()), data)
    return session_id if valid_session_id(session_id) else None


def prune_stale_sessions(max_age_seconds: int = SESSION_MAX_AGE) -> int:
    """Delete tab context files not written for max_age_seconds; return how many."""
    cutoff = time.time() - max_age_seconds
    removed = 0
    for p in get_session_dir().glob("ctx_*.json"):
        try:
            if p.stat().st_mtime < cutoff:
                p.unlink()
                removed += 1
        except OSError as e:
            logger.warning("Could not remove stale launch context %s: %s", p.name, e)
    return removed


def open_tab_store(params: Mapping[str, Any]) -> ContextStore:
    """Pick the launch context store for a page load from its URL parameters.

    - ``code`` + ``state``: the store bound to that state, or an empty
      in-memory store when the state is unknown or expired.
    - ``sid`` (without a new ``iss``/``launch``): that tab's store.
    - anything else: a new tab session.
    """
    code = query_param(params, "code")
    state = query_param(params, "state")
    if code and state:
        session_id = pop_session_for_state(state)
        if session_id:
            return FileContextStore(session_id=session_id)
        logger.warning("Authorization callback with no pending launch for its state")
        return ContextStore()

    session_id = query_param(params, SESSION_PARAM)
    relaunch = query_param(params, "iss") and query_param(params, "launch")
    if session_id and valid_session_id(session_id) and not relaunch:
        return FileContextStore(session_id=session_id)

    prune_stale_sessions()
    return FileContextStore()

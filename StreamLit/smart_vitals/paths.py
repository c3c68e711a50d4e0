"""Centralized path helpers for the Streamlit app.

Resolves data locations based on the DATADIR environment variable.

If DATADIR is set, we store/read these under that directory:
- config.json (global SMART client settings)
- session/ctx_<sid>.json (one launch context per browser tab)
- session/pending_states.json (state -> tab session id while the user signs in)
- logs/app_audit.log

If DATADIR is not set, we fall back to the repository's StreamLit folder
as the data root.
"""

from __future__ import annotations

import os
from pathlib import Path


def _streamlit_root() -> Path:
    # smart_vitals/paths.py -> smart_vitals -> StreamLit
    return Path(__file__).resolve().parent.parent


def get_data_root() -> Path:
    env = os.environ.get("DATADIR", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return _streamlit_root()


def _ensure_dir(p: Path) -> Path:
    p.mkdir(parents=True, exist_ok=True)
    # Best-effort: restrict to user-only access
    try:
        os.chmod(p, 0o700)
    except OSError:
        pass
    return p


def get_global_config_json_path() -> str:
    return (get_data_root() / "config.json").as_posix()


def get_session_dir() -> Path:
    return _ensure_dir(get_data_root() / "session")


def get_launch_context_path(session_id: str) -> str:
    """Return the JSON file backing one tab's launch context store."""
    return (get_session_dir() / f"ctx_{session_id}.json").as_posix()


def get_pending_states_path() -> str:
    """Return the state -> session id index used across the authorization redirect."""
    return (get_session_dir() / "pending_states.json").as_posix()


# -------- Audit logging paths --------
def get_logs_dir() -> Path:
    return _ensure_dir(get_data_root() / "logs")


def get_audit_log_path() -> str:
    return (get_logs_dir() / "app_audit.log").as_posix()

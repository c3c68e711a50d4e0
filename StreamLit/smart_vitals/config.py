"""Configuration utilities for the SMART Vitals app.

Settings come from three layers, later ones winning:
defaults < global config.json under DATADIR < environment variables.

The resolved values are also synced into Streamlit's session_state so that
pages see a consistent view across reruns.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Mapping, Optional

import streamlit as st

from .paths import get_global_config_json_path


DEFAULT_SCOPES = "openid fhirUser launch user/Patient.read user/Observation.read user/Observation.write"

# config.json key -> environment variable
_ENV_VARS = {
    "client_id": "SMART_CLIENT_ID",
    "redirect_uri": "SMART_REDIRECT_URI",
    "scopes": "SMART_SCOPES",
    "request_timeout": "SMART_REQUEST_TIMEOUT",
    "allow_unknown_codes": "SMART_ALLOW_UNKNOWN_CODES",
}


@dataclass(frozen=True)
class SmartSettings:
    client_id: str = ""
    redirect_uri: str = ""
    scopes: str = DEFAULT_SCOPES
    request_timeout: float = 30.0
    # Whether to POST observations whose category has no known LOINC code
    allow_unknown_codes: bool = False

    def missing_client_identity(self) -> list:
        missing = []
        if not (self.client_id or "").strip():
            missing.append("client_id")
        if not (self.redirect_uri or "").strip():
            missing.append("redirect_uri")
        return missing


def _default_config() -> dict:
    return asdict(SmartSettings())


def _read_json(path: str) -> dict:
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        # On any parse error, fall back to defaults without crashing the UI
        return {}
    return data if isinstance(data, dict) else {}


def _write_json(path: str, data: dict) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as f:
        json.dump(data or {}, f, indent=2)
    # Restrict permissions to user read/write only
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce(cfg: dict) -> SmartSettings:
    defaults = _default_config()
    try:
        timeout = float(cfg.get("request_timeout", defaults["request_timeout"]))
    except (TypeError, ValueError):
        timeout = defaults["request_timeout"]
    return SmartSettings(
        client_id=str(cfg.get("client_id") or "").strip(),
        redirect_uri=str(cfg.get("redirect_uri") or "").strip(),
        scopes=str(cfg.get("scopes") or defaults["scopes"]).strip(),
        request_timeout=max(1.0, timeout),
        allow_unknown_codes=_as_bool(cfg.get("allow_unknown_codes", False)),
    )


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> SmartSettings:
    """Resolve SMART client settings from defaults, config.json and the environment."""
    environ = os.environ if environ is None else environ
    defaults = _default_config()
    allowed_keys = set(defaults.keys())
    file_cfg = {k: v for k, v in _read_json(path or get_global_config_json_path()).items() if k in allowed_keys}
    env_cfg = {k: environ[var] for k, var in _ENV_VARS.items() if environ.get(var, "").strip()}
    cfg = {**defaults, **file_cfg, **env_cfg}
    return _coerce(cfg)


def save_configuration(config: dict, path: Optional[str] = None) -> None:
    """Persist known settings keys into the global config.json.

    Values set through environment variables still take precedence at load time.
    """
    path = path or get_global_config_json_path()
    allowed_keys = set(_default_config().keys())
    current = {k: v for k, v in _read_json(path).items() if k in allowed_keys}
    current.update({k: v for k, v in (config or {}).items() if k in allowed_keys and v is not None})
    _write_json(path, current)


def load_configuration() -> SmartSettings:
    """Load settings and sync them into session_state for consistent access across pages."""
    settings = load_settings()
    for k, v in asdict(settings).items():
        st.session_state[f"smart_{k}"] = v
    return settings

"""Text-based audit logging for launches and chart writes.

- Appends line-oriented JSON records to a rotating file under DATADIR/logs/app_audit.log
- Never records tokens, PKCE verifiers, state values or authorization codes.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .paths import get_audit_log_path

logger = logging.getLogger(__name__)

# Max log size before rotation (about 10 MB)
_MAX_LOG_BYTES = 10 * 1024 * 1024
_MAX_BACKUPS = 5


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_rotate(path: str) -> None:
    if not os.path.exists(path) or os.path.getsize(path) <= _MAX_LOG_BYTES:
        return
    # Rotate: app_audit.log -> app_audit.log.1 ... up to _MAX_BACKUPS
    for i in reversed(range(1, _MAX_BACKUPS)):
        src = f"{path}.{i}"
        if os.path.exists(src):
            os.replace(src, f"{path}.{i+1}")
    os.replace(path, f"{path}.1")


def log_event(actor: str, action: str, subject: Optional[str] = None, outcome: str = "success", meta: Optional[Dict[str, Any]] = None) -> None:
    """Append a single audit event as JSON to the log.

    actor: who initiated (e.g., 'launch' or 'vitals')
    action: what happened (e.g., 'launch', 'observation_create', 'reset')
    subject: target entity (e.g., patient id)
    outcome: 'success' | 'error'
    meta: small dict of non-sensitive details
    """
    rec = {
        "ts": _now_iso(),
        "actor": actor,
        "action": action,
        "subject": subject,
        "outcome": outcome,
        "meta": meta or {},
    }
    try:
        path = get_audit_log_path()
        _ensure_rotate(path)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
    except OSError as e:
        # An unwritable audit log must not break the clinical workflow
        logger.warning("Could not write audit event %s: %s", action, e)


def read_log_lines(limit: int = 200) -> List[str]:
    """Return up to 'limit' most recent lines from the audit log."""
    path = get_audit_log_path()
    if not os.path.exists(path):
        return []
    with open(path, "r", encoding="utf-8") as f:
        lines = f.readlines()[-limit:]
    return [ln.rstrip("\n") for ln in lines]

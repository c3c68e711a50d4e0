"""Plain data types shared by the launch and vitals modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class SmartConfiguration:
    authorization_endpoint: str
    token_endpoint: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class LaunchContext:
    """Values persisted before the authorization redirect and read back at callback time."""
    issuer: Optional[str]
    launch_token: Optional[str]
    code_verifier: Optional[str]
    expected_state: Optional[str]
    token_endpoint: Optional[str]


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    patient_id: Optional[str] = None

    def __repr__(self) -> str:
        # Keep credentials out of logs and tracebacks
        return f"TokenSet(patient_id={self.patient_id!r}, has_refresh_token={self.refresh_token is not None})"


@dataclass(frozen=True)
class Patient:
    id: str
    family: str = ""
    given: Tuple[str, ...] = ()
    gender: Optional[str] = None
    birth_date: Optional[str] = None

    @property
    def display_name(self) -> str:
        return " ".join([*self.given, self.family]).strip()

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "Patient":
        names: List[Dict[str, Any]] = resource.get("name") or [{}]
        name = names[0] or {}
        given = name.get("given") or []
        if isinstance(given, str):
            given = [given]
        return cls(
            id=str(resource.get("id") or ""),
            family=name.get("family") or "",
            given=tuple(given),
            gender=resource.get("gender"),
            birth_date=resource.get("birthDate"),
        )

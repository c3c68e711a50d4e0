from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest
import requests

from smart_vitals.config import SmartSettings
from smart_vitals.context_store import ContextStore

ISSUER = "https://ehr.example/fhir"
AUTH_URL = "https://ehr.example/oauth2/authorize"
TOKEN_URL = "https://ehr.example/oauth2/token"
WELL_KNOWN_URL = f"{ISSUER}/.well-known/smart-configuration"
OBSERVATION_URL = f"{ISSUER}/Observation"


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        if text is None:
            text = "" if json_data is None else json.dumps(json_data)
        self.text = text
        self.content = text.encode("utf-8")
        self.headers: Dict[str, str] = {}
        self.reason = "OK" if status_code < 400 else "Error"

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        return json.loads(self.text)


@dataclass
class Call:
    method: str
    url: str
    kwargs: Dict[str, Any] = field(default_factory=dict)


class FakeHttp:
    """Stands in for requests.get/requests.post and records every call.

    Responses are queued per (method, url); the last queued response is
    reused once the queue is down to one entry. Exceptions are raised.
    """

    def __init__(self) -> None:
        self.routes: Dict[tuple, List[Any]] = {}
        self.calls: List[Call] = []

    def add(self, method: str, url: str, *responses: Any) -> None:
        self.routes.setdefault((method.upper(), url), []).extend(responses)

    def handle(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append(Call(method, url, kwargs))
        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"unexpected {method} {url}")
        resp = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(resp, Exception):
            raise resp
        return resp

    def calls_to(self, method: str, url: str) -> List[Call]:
        return [c for c in self.calls if c.method == method and c.url == url]


@pytest.fixture(autouse=True)
def datadir(tmp_path, monkeypatch):
    monkeypatch.setenv("DATADIR", str(tmp_path))
    for var in ("SMART_CLIENT_ID", "SMART_REDIRECT_URI", "SMART_SCOPES", "SMART_REQUEST_TIMEOUT", "SMART_ALLOW_UNKNOWN_CODES"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


@pytest.fixture
def http(monkeypatch) -> FakeHttp:
    fake = FakeHttp()
    monkeypatch.setattr(requests, "get", lambda url, **kw: fake.handle("GET", url, **kw))
    monkeypatch.setattr(requests, "post", lambda url, **kw: fake.handle("POST", url, **kw))
    return fake


@pytest.fixture
def settings() -> SmartSettings:
    return SmartSettings(client_id="vitals-app", redirect_uri="https://app.example/callback")


@pytest.fixture
def store() -> ContextStore:
    return ContextStore()


def smart_config() -> Dict[str, Any]:
    return {"authorization_endpoint": AUTH_URL, "token_endpoint": TOKEN_URL}


def patient_resource(patient_id: str = "p-42") -> Dict[str, Any]:
    return {
        "resourceType": "Patient",
        "id": patient_id,
        "name": [{"family": "Chalmers", "given": ["Peter", "James"]}],
        "gender": "male",
        "birthDate": "1974-12-25",
    }


def vital(code_display: Optional[str], when: Optional[str], value: Any = 72, unit: str = "/min", code: Optional[str] = None) -> Dict[str, Any]:
    coding: Dict[str, Any] = {}
    if code_display is not None:
        coding["display"] = code_display
    if code is not None:
        coding["code"] = code
    resource: Dict[str, Any] = {"resourceType": "Observation", "code": {"coding": [coding]}}
    if when is not None:
        resource["effectiveDateTime"] = when
    if value is not None:
        resource["valueQuantity"] = {"value": value, "unit": unit}
    return resource


def bundle(*resources: Dict[str, Any]) -> Dict[str, Any]:
    return {"resourceType": "Bundle", "type": "searchset", "entry": [{"resource": r} for r in resources]}

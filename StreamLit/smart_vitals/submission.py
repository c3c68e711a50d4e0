"""Create new vital-sign Observations on the FHIR server.

A 401 on the create call triggers exactly one token refresh and exactly one
retry of the same POST. Whatever the retry returns is final.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

import requests

from . import fhir_client
from .audit import log_event
from .auth import TokenClient
from .config import SmartSettings
from .context_store import ContextKey, ContextStore
from .errors import ObservationCreateError, SmartError, UnknownCategoryCode
from .observations import normalize_iso

logger = logging.getLogger(__name__)

LOINC_SYSTEM = "http://loinc.org"
UCUM_SYSTEM = "http://unitsofmeasure.org"
OBSERVATION_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"

UNKNOWN_CODE = "unknown"

LOINC_CODES: Mapping[str, str] = MappingProxyType({
    "Blood Pressure": "8480-6",
    "Temperature": "8331-1",
    "Heart Rate": "8867-4",
    "Respiratory Rate": "9279-1",
    "Oxygen Saturation": "703498",
    "Weight": "29463-7",
    "Height": "8302-2",
    "Body Mass Index": "39156-5",
})

UCUM_CODES: Mapping[str, str] = MappingProxyType({
    "mmHg": "mm[Hg]",
    "bpm": "/min",
    "°C": "Cel",
    "°F": "[degF]",
    "kg": "kg",
    "lbs": "[lb_av]",
    "cm": "cm",
    "in": "[in_i]",
    "%": "%",
})


def loinc_code_for(category: str) -> str:
    return LOINC_CODES.get(category, UNKNOWN_CODE)


def ucum_code_for(unit: str) -> str:
    return UCUM_CODES.get(unit, unit)


@dataclass(frozen=True)
class VitalDraft:
    category: str
    value: Union[str, float, int]
    unit: str
    effective: Union[str, datetime]


@dataclass(frozen=True)
class SubmissionResult:
    created: Optional[Dict[str, Any]]
    access_token: str
    # The caller should re-run the vitals search so the new entry shows up
    refetch: bool = True


def _parse_number(value: Union[str, float, int]) -> float:
    if isinstance(value, bool):
        raise ObservationCreateError(f"Invalid value: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ObservationCreateError(f"Invalid value: {value!r}") from None
    if number != number or number in (float("inf"), float("-inf")):
        raise ObservationCreateError(f"Invalid value: {value!r}")
    return number


def _effective_iso(effective: Union[str, datetime]) -> str:
    if isinstance(effective, str):
        try:
            effective = datetime.fromisoformat(normalize_iso(effective))
        except ValueError:
            raise ObservationCreateError(f"Invalid date/time: {effective!r}") from None
    if effective.tzinfo is None:
        # Form input is local wall-clock time
        effective = effective.astimezone()
    return effective.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_observation(draft: VitalDraft, patient_id: str) -> Dict[str, Any]:
    """Return a FHIR Observation body for a single-quantity vital sign."""
    return {
        "resourceType": "Observation",
        "status": "final",
        "category": [
            {
                "coding": [
                    {
                        "system": OBSERVATION_CATEGORY_SYSTEM,
                        "code": "vital-signs",
                        "display": "Vital Signs",
                    }
                ],
                "text": "Vital Signs",
            }
        ],
        "code": {
            "coding": [{"system": LOINC_SYSTEM, "code": loinc_code_for(draft.category)}],
            "text": draft.category,
        },
        "subject": {"reference": f"Patient/{patient_id}"},
        "effectiveDateTime": _effective_iso(draft.effective),
        "valueQuantity": {
            "value": _parse_number(draft.value),
            "unit": draft.unit,
            "system": UCUM_SYSTEM,
            "code": ucum_code_for(draft.unit),
        },
    }


def _created_body(resp: requests.Response) -> Optional[Dict[str, Any]]:
    # Some servers answer 201 with an empty body and only a Location header
    text = (resp.text or "").strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        logger.warning("Observation created but response body is not JSON")
        return None
    return data if isinstance(data, dict) else None


class ObservationSubmitter:
    def __init__(self, store: ContextStore, token_client: TokenClient, settings: Optional[SmartSettings] = None):
        self.store = store
        self.tokens = token_client
        self.settings = settings or token_client.settings

    def submit(self, draft: VitalDraft) -> SubmissionResult:
        access_token = self.store.get(ContextKey.ACCESS_TOKEN)
        patient_id = self.store.get(ContextKey.PATIENT_ID)
        issuer = self.store.get(ContextKey.ISSUER)
        if not access_token or not patient_id or not issuer:
            raise ObservationCreateError("Missing authentication data")

        if loinc_code_for(draft.category) == UNKNOWN_CODE and not self.settings.allow_unknown_codes:
            raise UnknownCategoryCode(f"No LOINC code is known for category {draft.category!r}")

        resource = build_observation(draft, patient_id)
        try:
            created = self._post_with_refresh(issuer, access_token, resource)
        except SmartError as e:
            meta = {"category": draft.category, "error_type": type(e).__name__, "status": getattr(e, "status", None)}
            log_event("vitals", "observation_create", subject=patient_id, outcome="error", meta=meta)
            raise
        result_token, body = created
        log_event("vitals", "observation_create", subject=patient_id, meta={"category": draft.category})
        return SubmissionResult(created=body, access_token=result_token)

    def _post_with_refresh(self, issuer: str, access_token: str, resource: Dict[str, Any]):
        timeout = self.settings.request_timeout
        resp = fhir_client.post_observation(issuer, access_token, resource, timeout=timeout)
        if resp.ok:
            return access_token, _created_body(resp)
        if resp.status_code != 401:
            raise ObservationCreateError("Failed to create vital", resp.status_code, fhir_client.error_detail(resp))

        logger.info("Observation create returned 401; refreshing token and retrying once")
        # RefreshError propagates unchanged
        new_token = self.tokens.refresh()
        retry = fhir_client.post_observation(issuer, new_token, resource, timeout=timeout)
        if not retry.ok:
            raise ObservationCreateError(
                "Failed to create vital after token refresh", retry.status_code, fhir_client.error_detail(retry)
            )
        return new_token, _created_body(retry)

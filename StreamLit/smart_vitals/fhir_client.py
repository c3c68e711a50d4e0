"""Minimal SMART on FHIR client for the vitals app.

This module provides:
- SMART configuration discovery (.well-known/smart-configuration)
- Token endpoint grants (authorization_code with PKCE, refresh_token)
- Patient read, vital-sign Observation search and Observation create

Nothing here touches the launch context store; callers decide what to persist.
Every failure is raised as the matching smart_vitals.errors type.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

import requests

from .errors import (
    ConfigMalformed,
    DiscoveryError,
    NoPatientContext,
    ObservationCreateError,
    ObservationFetchError,
    PatientFetchError,
    RefreshError,
    TokenExchangeError,
)
from .models import SmartConfiguration, TokenSet

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
FHIR_JSON = "application/fhir+json"
VITALS_PAGE_SIZE = 100


def _auth_header(access_token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {access_token}", "Accept": FHIR_JSON}


def error_detail(resp: requests.Response) -> str:
    """Return the most useful error text from a failed response.

    Prefers a FHIR OperationOutcome diagnostic or an OAuth error_description,
    falling back to the raw body.
    """
    text = resp.text or ""
    try:
        data = resp.json()
    except ValueError:
        return text.strip()
    if isinstance(data, dict):
        if data.get("resourceType") == "OperationOutcome":
            issues = data.get("issue") or []
            if issues:
                diag = issues[0].get("diagnostics") or (issues[0].get("details") or {}).get("text")
                if diag:
                    return f"OperationOutcome: {diag}"
        err = data.get("error")
        desc = data.get("error_description") or data.get("message")
        if err or desc:
            return f"{err or 'error'} - {desc or text}".strip()
    return text.strip()


def discover_smart_configuration(issuer: str, timeout: float = DEFAULT_TIMEOUT) -> SmartConfiguration:
    """Fetch the SMART on FHIR discovery document for the given FHIR base."""
    url = f"{issuer.rstrip('/')}/.well-known/smart-configuration"
    logger.info("Discovering SMART configuration from %s", url)
    try:
        resp = requests.get(url, headers={"Accept": "application/json"}, timeout=timeout)
    except requests.RequestException as e:
        raise DiscoveryError(f"Failed to discover endpoints ({e})") from e
    if not resp.ok:
        raise DiscoveryError("Failed to discover endpoints", resp.status_code)
    try:
        data = resp.json()
    except ValueError as e:
        raise ConfigMalformed("SMART configuration response is not JSON") from e
    if not isinstance(data, dict):
        raise ConfigMalformed("SMART configuration response is not a JSON object")
    missing = [k for k in ("authorization_endpoint", "token_endpoint") if not data.get(k)]
    if missing:
        raise ConfigMalformed(f"SMART configuration is missing {', '.join(missing)}")
    return SmartConfiguration(
        authorization_endpoint=data["authorization_endpoint"],
        token_endpoint=data["token_endpoint"],
        raw=data,
    )


def _post_token(token_url: str, data: Dict[str, str], timeout: float) -> requests.Response:
    return requests.post(
        token_url,
        data=data,
        headers={"Accept": "application/json", "Content-Type": "application/x-www-form-urlencoded"},
        timeout=timeout,
    )


def exchange_token(
    token_url: str,
    code: str,
    client_id: str,
    redirect_uri: str,
    code_verifier: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> TokenSet:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": code_verifier,
    }
    logger.info("Exchanging authorization code at %s", token_url)
    try:
        resp = _post_token(token_url, data, timeout)
    except requests.RequestException as e:
        raise TokenExchangeError(f"Token endpoint unreachable ({e})") from e
    if not resp.ok:
        raise TokenExchangeError("Token exchange failed", resp.status_code, error_detail(resp))
    try:
        t = resp.json()
    except ValueError as e:
        raise TokenExchangeError("Token response is not JSON") from e
    if not isinstance(t, dict) or not t.get("access_token"):
        raise TokenExchangeError("Token response has no access_token")
    patient_id = t.get("patient")
    if not patient_id:
        raise NoPatientContext("No patient context found in token. This app must be launched with a patient context.")
    return TokenSet(
        access_token=t["access_token"],
        refresh_token=t.get("refresh_token"),
        patient_id=str(patient_id),
    )


def refresh_token(token_url: str, refresh_token: str, client_id: str, timeout: float = DEFAULT_TIMEOUT) -> TokenSet:
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    logger.info("Refreshing access token at %s", token_url)
    try:
        resp = _post_token(token_url, data, timeout)
    except requests.RequestException as e:
        raise RefreshError(f"Token endpoint unreachable ({e})") from e
    if not resp.ok:
        raise RefreshError("Token refresh failed", resp.status_code, error_detail(resp))
    try:
        t = resp.json()
    except ValueError as e:
        raise RefreshError("Refresh response is not JSON") from e
    if not isinstance(t, dict) or not t.get("access_token"):
        raise RefreshError("Refresh response has no access_token")
    return TokenSet(
        access_token=t["access_token"],
        # Servers that do not rotate refresh tokens omit the field
        refresh_token=t.get("refresh_token"),
        patient_id=t.get("patient"),
    )


def fetch_patient(issuer: str, access_token: str, patient_id: str, timeout: float = DEFAULT_TIMEOUT) -> Dict[str, Any]:
    url = f"{issuer.rstrip('/')}/Patient/{patient_id}"
    try:
        resp = requests.get(url, headers=_auth_header(access_token), timeout=timeout)
    except requests.RequestException as e:
        raise PatientFetchError(f"Failed to fetch patient ({e})") from e
    if not resp.ok:
        raise PatientFetchError("Failed to fetch patient", resp.status_code, error_detail(resp))
    try:
        data = resp.json()
    except ValueError as e:
        raise PatientFetchError("Patient response is not JSON") from e
    if not isinstance(data, dict) or data.get("resourceType", "Patient") != "Patient":
        raise PatientFetchError("Patient response is not a Patient resource")
    return data


def search_vital_signs(issuer: str, access_token: str, patient_id: str, timeout: float = DEFAULT_TIMEOUT) -> Dict[str, Any]:
    """Return the raw Bundle of the patient's most recent vital-sign Observations."""
    url = f"{issuer.rstrip('/')}/Observation"
    params: Dict[str, Any] = {
        "patient": patient_id,
        "category": "vital-signs",
        "_count": VITALS_PAGE_SIZE,
        "_sort": "-date",
    }
    try:
        resp = requests.get(url, headers=_auth_header(access_token), params=params, timeout=timeout)
    except requests.RequestException as e:
        raise ObservationFetchError(f"Failed to fetch vitals ({e})") from e
    if not resp.ok:
        raise ObservationFetchError("Failed to fetch vitals", resp.status_code, error_detail(resp))
    try:
        data = resp.json()
    except ValueError as e:
        raise ObservationFetchError("Vitals response is not JSON") from e
    if not isinstance(data, dict):
        raise ObservationFetchError("Vitals response is not a Bundle")
    return data


def post_observation(
    issuer: str,
    access_token: str,
    resource: Dict[str, Any],
    timeout: float = DEFAULT_TIMEOUT,
) -> requests.Response:
    """POST an Observation and return the raw response; status handling is up to the caller."""
    url = f"{issuer.rstrip('/')}/Observation"
    headers = {**_auth_header(access_token), "Content-Type": FHIR_JSON}
    try:
        return requests.post(url, headers=headers, json=resource, timeout=timeout)
    except requests.RequestException as e:
        raise ObservationCreateError(f"Failed to create vital ({e})") from e

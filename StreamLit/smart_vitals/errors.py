"""Error taxonomy for the SMART launch and vitals workflow.

Every failure a collaborator can raise is a SmartError subclass, so callers can
convert them into a readable message at a single point. HTTP-backed errors keep
the status code and response body for diagnostics.
"""
from __future__ import annotations

from typing import Optional


class SmartError(Exception):
    """Base class for all launch, token and FHIR errors."""


class HttpError(SmartError):
    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        self.status = status
        self.body = body
        if status is not None:
            message = f"{message}: {status}"
            if body:
                message = f"{message} {body}"
        super().__init__(message)


class MissingLaunchParameters(SmartError):
    pass


class DiscoveryError(HttpError):
    pass


class ConfigMalformed(SmartError):
    """The SMART configuration document lacks required endpoints."""


class ConfigError(SmartError):
    """Client identity (client id / redirect URI) is not configured."""


class StateMismatch(SmartError):
    """Callback state differs from the persisted value. Never retried."""


class TokenExchangeError(HttpError):
    pass


class NoPatientContext(SmartError):
    pass


class PatientFetchError(HttpError):
    pass


class ObservationFetchError(HttpError):
    pass


class ObservationCreateError(HttpError):
    pass


class UnknownCategoryCode(ObservationCreateError):
    """The vital category has no LOINC mapping and unknown codes are not allowed."""


class RefreshError(HttpError):
    pass

"""SMART EHR launch state machine.

A launch spans two page loads. The first load arrives from the EHR with
``iss`` and ``launch``; we discover the authorization server, persist the PKCE
values and send the browser away. The second load arrives from the
authorization server with ``code`` and ``state``; we exchange the code,
fetch the patient and finish. Which half to run is decided purely from the
URL parameters and the persisted launch context, because nothing else
survives the redirect.

Order of dispatch in ``LaunchMachine.start``:

1. ``code`` and ``state`` present  -> exchanging-token -> fetching-patient -> success
2. ``error`` present               -> error (authorization server refused)
3. ``iss`` and ``launch`` present  -> launch -> discovering -> building-auth -> redirecting
4. cached patient + issuer         -> success (back navigation, no network)
5. otherwise                       -> error (missing launch parameters)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from . import fhir_client
from .audit import log_event
from .auth import AuthorizationRedirector, TokenClient
from .config import SmartSettings
from .context_store import ContextKey, ContextStore, query_param
from .errors import (
    MissingLaunchParameters,
    NoPatientContext,
    PatientFetchError,
    SmartError,
)
from .models import Patient, SmartConfiguration, TokenSet

logger = logging.getLogger(__name__)

MISSING_PARAMETERS_MESSAGE = "Missing required parameters. Please launch from EHR."


class LaunchStep(str, Enum):
    WAITING = "waiting"
    LAUNCH = "launch"
    DISCOVERING = "discovering"
    BUILDING_AUTH = "building-auth"
    REDIRECTING = "redirecting"
    EXCHANGING_TOKEN = "exchanging-token"
    FETCHING_PATIENT = "fetching-patient"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (LaunchStep.SUCCESS, LaunchStep.ERROR)


@dataclass(frozen=True)
class LaunchState:
    step: LaunchStep = LaunchStep.WAITING
    issuer: Optional[str] = None
    launch: Optional[str] = None
    patient: Optional[Patient] = None
    redirect_url: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


def _ignore_navigation(url: str) -> None:
    logger.info("No navigator installed; authorization URL left on the launch state")


class LaunchMachine:
    """Drives one browser tab through the SMART launch.

    ``navigate`` hands the browser to the authorization URL; it is called only
    after the launch context has been written. ``discover`` and ``fetch_patient``
    default to the real FHIR client calls and can be swapped out.

    ``reset`` clears the store and bumps an epoch. Any step that was already in
    flight compares its epoch on return and drops its result if a reset
    happened meanwhile.
    """

    def __init__(
        self,
        store: ContextStore,
        settings: SmartSettings,
        navigate: Optional[Callable[[str], None]] = None,
        discover: Callable[..., SmartConfiguration] = fhir_client.discover_smart_configuration,
        fetch_patient: Callable[..., Dict[str, Any]] = fhir_client.fetch_patient,
        on_transition: Optional[Callable[[LaunchState], None]] = None,
    ):
        self.store = store
        self.settings = settings
        self.redirector = AuthorizationRedirector(store, settings)
        self.tokens = TokenClient(store, settings)
        self._navigate = navigate or _ignore_navigation
        self._discover = discover
        self._fetch_patient = fetch_patient
        self._on_transition = on_transition
        self._epoch = 0
        self.state = LaunchState()

    # Public API

    def start(self, params: Mapping[str, Any]) -> LaunchState:
        epoch = self._epoch
        code = query_param(params, "code")
        state = query_param(params, "state")
        if code and state:
            return self._handle_callback(epoch, code, state)

        error = query_param(params, "error")
        if error:
            desc = query_param(params, "error_description")
            message = f"{error}: {desc}" if desc else error
            return self._fail(epoch, SmartError(message), "Authorization failed")

        issuer = query_param(params, "iss")
        launch = query_param(params, "launch")
        if issuer and launch:
            return self._handle_launch(epoch, issuer, launch)

        restored = self._restore(epoch)
        if restored is not None:
            return restored
        return self._fail(epoch, MissingLaunchParameters(MISSING_PARAMETERS_MESSAGE))

    def reset(self) -> LaunchState:
        self._epoch += 1
        self.store.clear()
        self.state = LaunchState()
        log_event("launch", "reset")
        logger.info("Launch session reset")
        self._notify()
        return self.state

    # Steps

    def _handle_launch(self, epoch: int, issuer: str, launch: str) -> LaunchState:
        if not self._enter(epoch, LaunchStep.LAUNCH, issuer=issuer, launch=launch, patient=None, error=None, error_type=None):
            return self.state
        # A new EHR launch replaces whatever the tab held before
        self.store.clear()

        if not self._enter(epoch, LaunchStep.DISCOVERING):
            return self.state
        try:
            config = self._discover(issuer, timeout=self.settings.request_timeout)
        except SmartError as e:
            return self._fail(epoch, e, "Discovery failed")
        if self._stale(epoch):
            return self.state

        if not self._enter(epoch, LaunchStep.BUILDING_AUTH):
            return self.state
        try:
            url = self.redirector.authorize(issuer, config, launch)
        except (SmartError, OSError) as e:
            return self._fail(epoch, e, "Auth URL build failed")

        if not self._enter(epoch, LaunchStep.REDIRECTING, redirect_url=url):
            return self.state
        self._navigate(url)
        return self.state

    def _handle_callback(self, epoch: int, code: str, state: str) -> LaunchState:
        ctx = self.store.launch_context()
        if not self._enter(epoch, LaunchStep.EXCHANGING_TOKEN, issuer=ctx.issuer, launch=ctx.launch_token, redirect_url=None):
            return self.state
        try:
            tokens = self.tokens.exchange(code, state)
        except NoPatientContext as e:
            return self._fail(epoch, e)
        except SmartError as e:
            return self._fail(epoch, e, "Token exchange failed")
        if self._stale(epoch):
            return self.state

        self._persist_tokens(tokens)
        return self._load_patient(epoch, ctx.issuer, tokens)

    def _persist_tokens(self, tokens: TokenSet) -> None:
        self.store.update({
            ContextKey.ACCESS_TOKEN: tokens.access_token,
            ContextKey.PATIENT_ID: tokens.patient_id,
        })
        if tokens.refresh_token:
            self.store.set(ContextKey.REFRESH_TOKEN, tokens.refresh_token)
        else:
            self.store.delete(ContextKey.REFRESH_TOKEN)

    def _load_patient(self, epoch: int, issuer: Optional[str], tokens: TokenSet) -> LaunchState:
        if not self._enter(epoch, LaunchStep.FETCHING_PATIENT):
            return self.state
        try:
            if not issuer:
                raise PatientFetchError("No issuer in launch context")
            resource = self._fetch_patient(issuer, tokens.access_token, tokens.patient_id, timeout=self.settings.request_timeout)
        except SmartError as e:
            return self._fail(epoch, e, "Patient fetch failed")
        if self._stale(epoch):
            return self.state

        patient = Patient.from_resource(resource)
        self.store.update({
            ContextKey.PATIENT_DATA: json.dumps(resource),
            ContextKey.PATIENT_ID: patient.id or tokens.patient_id,
        })
        log_event("launch", "launch", subject=patient.id or tokens.patient_id, meta={"issuer": issuer})
        self._enter(epoch, LaunchStep.SUCCESS, patient=patient)
        return self.state

    def _restore(self, epoch: int) -> Optional[LaunchState]:
        snapshot = self.store.get(ContextKey.PATIENT_DATA)
        issuer = self.store.get(ContextKey.ISSUER)
        if not snapshot or not issuer:
            return None
        try:
            patient = Patient.from_resource(json.loads(snapshot))
        except (ValueError, AttributeError):
            logger.warning("Cached patient snapshot is unreadable; ignoring it")
            return None
        logger.info("Restoring completed launch from cached patient snapshot")
        self._enter(epoch, LaunchStep.SUCCESS, issuer=issuer, launch=self.store.get(ContextKey.LAUNCH), patient=patient)
        return self.state

    # Helpers

    def _stale(self, epoch: int) -> bool:
        if epoch != self._epoch:
            logger.info("Discarding result that arrived after a reset")
            return True
        return False

    def _enter(self, epoch: int, step: LaunchStep, **changes: Any) -> bool:
        if self._stale(epoch):
            return False
        self.state = replace(self.state, step=step, **changes)
        logger.info("Launch step -> %s", step.value)
        self._notify()
        return True

    def _fail(self, epoch: int, exc: Exception, prefix: Optional[str] = None) -> LaunchState:
        message = f"{prefix}: {exc}" if prefix else str(exc)
        if self._enter(epoch, LaunchStep.ERROR, error=message, error_type=type(exc).__name__, redirect_url=None):
            logger.warning("Launch failed (%s): %s", type(exc).__name__, message)
            log_event("launch", "launch", subject=self.state.issuer, outcome="error", meta={"error_type": type(exc).__name__})
        return self.state

    def _notify(self) -> None:
        if self._on_transition is not None:
            self._on_transition(self.state)

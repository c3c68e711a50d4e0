"""Vital-sign retrieval, categorization and pagination.

Observations come back from the FHIR server in one bounded search. They are
grouped by the display label of their first code coding, each group sorted
most-recent first, and shown five at a time.

An Observation's value can take several shapes. ``parse_value`` checks them in
a fixed order and returns the first that is present:

    valueQuantity > component quantities > valueCodeableConcept > valueString > valueBoolean

so an Observation carrying both a quantity and components always reports the
quantity.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from . import fhir_client
from .config import SmartSettings
from .context_store import ContextKey, ContextStore
from .errors import ObservationFetchError

logger = logging.getLogger(__name__)

VITALS_PER_PAGE = 5
UNKNOWN_CATEGORY = "Unknown"
NO_VALUE = "No value available"
UNKNOWN_DATE = "Unknown date"
NO_SESSION_MESSAGE = "No patient session found. Please launch from EHR."


# ---------------- Value variants ---------------- #

def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


@dataclass(frozen=True)
class Quantity:
    value: Any
    unit: Optional[str] = None

    def format(self) -> str:
        return f"{_format_number(self.value)} {self.unit or ''}".strip()


@dataclass(frozen=True)
class Components:
    quantities: Tuple[Quantity, ...]

    def format(self) -> str:
        return " / ".join(q.format() for q in self.quantities)


@dataclass(frozen=True)
class CodedConcept:
    text: str

    def format(self) -> str:
        return self.text


@dataclass(frozen=True)
class Text:
    text: str

    def format(self) -> str:
        return self.text


@dataclass(frozen=True)
class Flag:
    value: bool

    def format(self) -> str:
        return "Yes" if self.value else "No"


@dataclass(frozen=True)
class NoValue:
    def format(self) -> str:
        return NO_VALUE


ObservationValue = Union[Quantity, Components, CodedConcept, Text, Flag, NoValue]


def _quantity(raw: Any) -> Optional[Quantity]:
    if isinstance(raw, dict) and raw.get("value") is not None:
        return Quantity(raw["value"], raw.get("unit"))
    return None


def _match_quantity(o: Dict[str, Any]) -> Optional[ObservationValue]:
    return _quantity(o.get("valueQuantity"))


def _match_components(o: Dict[str, Any]) -> Optional[ObservationValue]:
    quantities = [q for q in (_quantity((c or {}).get("valueQuantity")) for c in o.get("component") or []) if q]
    return Components(tuple(quantities)) if quantities else None


def _match_coded(o: Dict[str, Any]) -> Optional[ObservationValue]:
    cc = o.get("valueCodeableConcept")
    if not isinstance(cc, dict):
        return None
    codings = cc.get("coding") or [{}]
    return CodedConcept(cc.get("text") or (codings[0] or {}).get("display") or "Coded value")


def _match_string(o: Dict[str, Any]) -> Optional[ObservationValue]:
    s = o.get("valueString")
    return Text(s) if isinstance(s, str) and s else None


def _match_boolean(o: Dict[str, Any]) -> Optional[ObservationValue]:
    b = o.get("valueBoolean")
    return Flag(b) if isinstance(b, bool) else None


# Priority order matters: the first matcher that returns a value wins
_VALUE_MATCHERS = (_match_quantity, _match_components, _match_coded, _match_string, _match_boolean)


def parse_value(resource: Dict[str, Any]) -> ObservationValue:
    for matcher in _VALUE_MATCHERS:
        value = matcher(resource)
        if value is not None:
            return value
    return NoValue()


# ---------------- Observations and categories ---------------- #

_FRACTION_RE = re.compile(r"\.(\d+)(?=[+-]\d\d:\d\d$|$)")


def normalize_iso(value: str) -> str:
    """Rewrite a FHIR dateTime so datetime.fromisoformat accepts it on any Python 3.

    ``Z`` becomes ``+00:00`` and fractional seconds are padded or cut to six digits.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text)


def parse_instant(value: Optional[str]) -> Optional[datetime]:
    """Parse a FHIR dateTime/instant; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    text = normalize_iso(value)
    # FHIR allows partial dates (YYYY, YYYY-MM)
    if len(text) == 4:
        text += "-01-01"
    elif len(text) == 7:
        text += "-01"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def category_label(resource: Dict[str, Any]) -> str:
    codings = (resource.get("code") or {}).get("coding") or []
    first = (codings[0] or {}) if codings else {}
    return first.get("display") or first.get("code") or UNKNOWN_CATEGORY


@dataclass(frozen=True)
class Observation:
    category: str
    effective: Optional[str]
    value: ObservationValue
    resource: Dict[str, Any] = field(compare=False, repr=False)

    @property
    def effective_time(self) -> Optional[datetime]:
        return parse_instant(self.effective)

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "Observation":
        return cls(
            category=category_label(resource),
            effective=resource.get("effectiveDateTime") or resource.get("issued"),
            value=parse_value(resource),
            resource=resource,
        )


def format_value(observation: Union[Observation, Dict[str, Any]]) -> str:
    if isinstance(observation, Observation):
        return observation.value.format()
    return parse_value(observation).format()


def format_date(value: Optional[str]) -> str:
    dt = parse_instant(value)
    if dt is None:
        return value or UNKNOWN_DATE
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


@dataclass
class ObservationCategory:
    name: str
    observations: List[Observation]

    @property
    def count(self) -> int:
        return len(self.observations)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _recency_key(o: Observation) -> Tuple[bool, datetime]:
    ts = o.effective_time
    # Missing timestamps sort after every dated observation
    return (ts is not None, ts or _EPOCH)


def categorize(bundle: Optional[Dict[str, Any]]) -> List[ObservationCategory]:
    """Group bundle entries by category label, newest first within each group.

    Python's sort is stable with reverse=True, so observations with equal
    timestamps keep their bundle order.
    """
    groups: Dict[str, List[Observation]] = {}
    for entry in (bundle or {}).get("entry") or []:
        resource = (entry or {}).get("resource")
        if not isinstance(resource, dict):
            continue
        obs = Observation.from_resource(resource)
        groups.setdefault(obs.category, []).append(obs)
    return [
        ObservationCategory(name, sorted(items, key=_recency_key, reverse=True))
        for name, items in groups.items()
    ]


# ---------------- Pagination ---------------- #

@dataclass(frozen=True)
class PaginationWindow:
    page: int
    total: int
    size: int = VITALS_PER_PAGE

    @property
    def start(self) -> int:
        return self.page * self.size

    @property
    def end(self) -> int:
        return min(self.start + self.size, self.total)

    @property
    def has_more(self) -> bool:
        return (self.page + 1) * self.size < self.total

    @property
    def has_previous(self) -> bool:
        return self.page > 0

    @property
    def summary(self) -> str:
        if self.total == 0:
            return "Showing 0 of 0"
        return f"Showing {self.start + 1}-{self.end} of {self.total}"


class VitalsBrowser:
    """Holds one fetched bundle and the user's category/page selection."""

    def __init__(self, settings: Optional[SmartSettings] = None, page_size: int = VITALS_PER_PAGE):
        self.settings = settings or SmartSettings()
        self.page_size = page_size
        self.bundle: Optional[Dict[str, Any]] = None
        self.categories: List[ObservationCategory] = []
        self.selected: Optional[ObservationCategory] = None
        self.page = 0

    def fetch(self, issuer: str, access_token: str, patient_id: str) -> List[ObservationCategory]:
        """Run the vital-signs search and rebuild the categories.

        The current selection is kept (by name) when it still exists, and the
        page resets to 0.
        """
        bundle = fhir_client.search_vital_signs(issuer, access_token, patient_id, timeout=self.settings.request_timeout)
        self.bundle = bundle
        self.categories = categorize(bundle)
        logger.info("Loaded %d vital-sign observations in %d categories", sum(c.count for c in self.categories), len(self.categories))
        previous = self.selected.name if self.selected else None
        self.selected = None
        self.page = 0
        if previous:
            self.select_category(previous)
        return self.categories

    def load(self, store: ContextStore) -> List[ObservationCategory]:
        """Fetch using the session persisted by the launch."""
        access_token = store.get(ContextKey.ACCESS_TOKEN)
        patient_id = store.get(ContextKey.PATIENT_ID)
        issuer = store.get(ContextKey.ISSUER)
        if not access_token or not patient_id or not issuer:
            raise ObservationFetchError(NO_SESSION_MESSAGE)
        return self.fetch(issuer, access_token, patient_id)

    def category(self, name: str) -> Optional[ObservationCategory]:
        for c in self.categories:
            if c.name == name:
                return c
        return None

    def select_category(self, name: str) -> List[Observation]:
        self.selected = self.category(name)
        self.page = 0
        return self.visible()

    @property
    def window(self) -> Optional[PaginationWindow]:
        if self.selected is None:
            return None
        return PaginationWindow(self.page, self.selected.count, self.page_size)

    def visible(self) -> List[Observation]:
        w = self.window
        if w is None:
            return []
        return self.selected.observations[w.start:w.end]

    def has_more(self) -> bool:
        w = self.window
        return bool(w and w.has_more)

    def next_page(self) -> List[Observation]:
        if self.has_more():
            self.page += 1
        return self.visible()

    def previous_page(self) -> List[Observation]:
        if self.page > 0:
            self.page -= 1
        return self.visible()

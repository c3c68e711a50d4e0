import pytest

from smart_vitals.context_store import ContextKey
from smart_vitals.errors import ObservationFetchError
from smart_vitals.observations import (
    NO_VALUE,
    UNKNOWN_CATEGORY,
    CodedConcept,
    Components,
    Flag,
    NoValue,
    Observation,
    PaginationWindow,
    Quantity,
    Text,
    VitalsBrowser,
    categorize,
    format_date,
    format_value,
    parse_value,
)

from conftest import ISSUER, OBSERVATION_URL, FakeResponse, bundle, vital


def _bp(systolic=120, diastolic=80):
    return {
        "resourceType": "Observation",
        "code": {"coding": [{"display": "Blood Pressure"}]},
        "component": [
            {"code": {"text": "Systolic"}, "valueQuantity": {"value": systolic, "unit": "mmHg"}},
            {"code": {"text": "Diastolic"}, "valueQuantity": {"value": diastolic, "unit": "mmHg"}},
        ],
    }


class TestValueFormatting:
    def test_single_quantity(self):
        assert format_value(vital("Heart Rate", None, 72, "/min")) == "72 /min"

    def test_quantity_wins_over_components(self):
        resource = _bp()
        resource["valueQuantity"] = {"value": 98.6, "unit": "degF"}
        assert isinstance(parse_value(resource), Quantity)
        assert format_value(resource) == "98.6 degF"

    def test_components_joined(self):
        assert isinstance(parse_value(_bp()), Components)
        assert format_value(_bp()) == "120 mmHg / 80 mmHg"

    def test_components_without_values_are_skipped(self):
        resource = _bp()
        resource["component"][1]["valueQuantity"] = {"unit": "mmHg"}
        assert format_value(resource) == "120 mmHg"

    def test_coded_concept(self):
        assert format_value({"valueCodeableConcept": {"text": "Normal"}}) == "Normal"
        assert format_value({"valueCodeableConcept": {"coding": [{"display": "High"}]}}) == "High"
        assert format_value({"valueCodeableConcept": {}}) == "Coded value"
        assert isinstance(parse_value({"valueCodeableConcept": {"text": "x"}, "valueString": "y"}), CodedConcept)

    def test_string_and_boolean(self):
        assert isinstance(parse_value({"valueString": "irregular"}), Text)
        assert format_value({"valueString": "irregular"}) == "irregular"
        assert isinstance(parse_value({"valueBoolean": False}), Flag)
        assert format_value({"valueBoolean": False}) == "No"
        assert format_value({"valueBoolean": True}) == "Yes"

    def test_string_beats_boolean(self):
        assert format_value({"valueString": "present", "valueBoolean": False}) == "present"

    def test_no_recognized_value(self):
        resource = {"resourceType": "Observation", "valueQuantity": {"unit": "kg"}, "component": []}
        assert isinstance(parse_value(resource), NoValue)
        assert format_value(resource) == NO_VALUE

    def test_integral_floats_render_without_decimal(self):
        assert format_value(vital("Weight", None, 70.0, "kg")) == "70 kg"

    def test_quantity_without_unit(self):
        assert format_value({"valueQuantity": {"value": 5}}) == "5"


class TestCategorize:
    def test_groups_by_display_then_code_then_unknown(self):
        b = bundle(
            vital("Heart Rate", "2024-01-01T10:00:00Z"),
            vital(None, "2024-01-02T10:00:00Z", code="8867-4"),
            vital(None, "2024-01-03T10:00:00Z"),
            vital("Heart Rate", "2024-01-04T10:00:00Z"),
        )
        cats = {c.name: c for c in categorize(b)}
        assert set(cats) == {"Heart Rate", "8867-4", UNKNOWN_CATEGORY}
        assert cats["Heart Rate"].count == 2
        assert sum(c.count for c in cats.values()) == 4

    def test_sorted_newest_first_with_issued_fallback(self):
        older = vital("Temperature", "2024-01-01T08:00:00Z", 97)
        newer = vital("Temperature", None, 99)
        newer["issued"] = "2024-03-01T08:00:00Z"
        middle = vital("Temperature", "2024-02-01T08:00:00+00:00", 98)
        (cat,) = categorize(bundle(older, newer, middle))
        assert [format_value(o) for o in cat.observations] == ["99 /min", "98 /min", "97 /min"]

    def test_ties_keep_bundle_order(self):
        same = "2024-05-05T05:05:05Z"
        items = [vital("Weight", same, v, "kg") for v in (1, 2, 3)]
        (cat,) = categorize(bundle(*items))
        assert [o.value.value for o in cat.observations] == [1, 2, 3]

    def test_undated_observations_sort_last(self):
        (cat,) = categorize(bundle(vital("Weight", None, 1, "kg"), vital("Weight", "2020-01-01", 2, "kg")))
        assert [o.value.value for o in cat.observations] == [2, 1]

    def test_empty_or_missing_entries(self):
        assert categorize({"resourceType": "Bundle"}) == []
        assert categorize(None) == []

    def test_observation_effective_time(self):
        obs = Observation.from_resource(vital("Weight", "2024-01-01T00:00:00Z"))
        assert obs.effective_time.year == 2024
        assert obs.category == "Weight"


class TestPagination:
    @pytest.mark.parametrize("page,start,end,has_more", [
        (0, 0, 5, True),
        (1, 5, 10, True),
        (2, 10, 12, False),
    ])
    def test_window_bounds(self, page, start, end, has_more):
        w = PaginationWindow(page=page, total=12)
        assert (w.start, w.end, w.has_more) == (start, end, has_more)

    def test_summary(self):
        assert PaginationWindow(page=2, total=12).summary == "Showing 11-12 of 12"
        assert PaginationWindow(page=0, total=0).summary == "Showing 0 of 0"


def _twelve_heart_rates_and_one_weight():
    rates = [vital("Heart Rate", f"2024-01-{day:02d}T00:00:00Z", 60 + day) for day in range(1, 13)]
    return bundle(*rates, vital("Weight", "2024-01-01T00:00:00Z", 70, "kg"))


class TestVitalsBrowser:
    def _loaded(self, http):
        http.add("GET", OBSERVATION_URL, FakeResponse(200, _twelve_heart_rates_and_one_weight()))
        browser = VitalsBrowser()
        browser.fetch(ISSUER, "at", "p-42")
        return browser

    def test_paging_through_a_category(self, http):
        browser = self._loaded(http)
        first = browser.select_category("Heart Rate")
        assert [o.value.value for o in first] == [72, 71, 70, 69, 68]
        assert browser.has_more()
        second = browser.next_page()
        assert [o.value.value for o in second] == [67, 66, 65, 64, 63]
        assert browser.has_more()
        third = browser.next_page()
        assert [o.value.value for o in third] == [62, 61]
        assert not browser.has_more()
        # Advancing past the end is a no-op
        assert browser.next_page() == third
        assert browser.page == 2
        assert len(http.calls) == 1

    def test_previous_page(self, http):
        browser = self._loaded(http)
        browser.select_category("Heart Rate")
        assert browser.previous_page() == browser.visible()
        assert browser.page == 0
        browser.next_page()
        browser.previous_page()
        assert browser.page == 0

    def test_selecting_a_category_resets_page(self, http):
        browser = self._loaded(http)
        browser.select_category("Heart Rate")
        browser.next_page()
        browser.select_category("Weight")
        assert browser.page == 0
        assert browser.window.total == 1
        browser.select_category("Heart Rate")
        assert browser.page == 0

    def test_refetch_keeps_selection_and_resets_page(self, http):
        browser = self._loaded(http)
        browser.select_category("Heart Rate")
        browser.next_page()
        browser.fetch(ISSUER, "at", "p-42")
        assert browser.selected.name == "Heart Rate"
        assert browser.page == 0

    def test_nothing_selected(self):
        browser = VitalsBrowser()
        assert browser.visible() == []
        assert browser.window is None
        assert not browser.has_more()

    def test_load_reads_session_from_store(self, http, store):
        http.add("GET", OBSERVATION_URL, FakeResponse(200, _twelve_heart_rates_and_one_weight()))
        store.update({ContextKey.ACCESS_TOKEN: "at", ContextKey.PATIENT_ID: "p-42", ContextKey.ISSUER: ISSUER})
        cats = VitalsBrowser().load(store)
        assert {c.name for c in cats} == {"Heart Rate", "Weight"}
        assert http.calls[0].kwargs["headers"]["Authorization"] == "Bearer at"

    def test_load_without_session(self, http, store):
        with pytest.raises(ObservationFetchError, match="No patient session"):
            VitalsBrowser().load(store)
        assert http.calls == []

    def test_fetch_failure_surfaces(self, http):
        http.add("GET", OBSERVATION_URL, FakeResponse(500, text="down"))
        with pytest.raises(ObservationFetchError) as exc:
            VitalsBrowser().fetch(ISSUER, "at", "p-42")
        assert exc.value.status == 500


@pytest.mark.parametrize("value,micro", [
    ("2024-01-01T10:30:00.12Z", 120000),
    ("2024-01-01T10:30:00.1+02:00", 100000),
    ("2024-01-01T10:30:00.1234567Z", 123456),
    ("2024-01-01T10:30:00.123Z", 123000),
])
def test_fractional_seconds_of_any_length(value, micro):
    dt = Observation.from_resource(vital("Weight", value)).effective_time
    assert dt is not None
    assert dt.microsecond == micro


def test_format_date():
    assert format_date(None) == "Unknown date"
    assert format_date("2024-01-01T10:00:00Z").startswith("2024-01-01")
    assert format_date("not a date") == "not a date"

# This page lists the patient's vital signs by category and lets the user
# record a new one. It relies on the session persisted by the launch page.

import json
from datetime import datetime

import streamlit as st

from smart_vitals.auth import TokenClient
from smart_vitals.config import load_configuration
from smart_vitals.context_store import SESSION_PARAM, ContextKey, open_tab_store
from smart_vitals.errors import ObservationFetchError, SmartError
from smart_vitals.models import Patient
from smart_vitals.observations import VitalsBrowser, format_date, format_value
from smart_vitals.submission import LOINC_CODES, UCUM_CODES, ObservationSubmitter, VitalDraft
from smart_vitals.ui import render_footer

st.set_page_config(page_title="Vitals", layout="wide")

st.title("Patient Vitals")

settings = load_configuration()
# The launch page hands over this tab's store; a direct visit finds it by ?sid=
if "context_store" not in st.session_state:
    st.session_state["context_store"] = open_tab_store(st.query_params.to_dict())
store = st.session_state["context_store"]
if store.session_id and store.get(ContextKey.ACCESS_TOKEN):
    st.query_params[SESSION_PARAM] = store.session_id
token_client = TokenClient(store, settings)

st.session_state.setdefault("vitals_browser", VitalsBrowser(settings))
st.session_state.setdefault("vitals_loaded", False)
st.session_state.setdefault("vitals_error", None)
st.session_state.setdefault("vitals_error_status", None)
st.session_state.setdefault("show_add_form", False)
browser: VitalsBrowser = st.session_state["vitals_browser"]


def _load_vitals() -> None:
    try:
        browser.load(store)
        st.session_state["vitals_error"] = None
        st.session_state["vitals_error_status"] = None
    except ObservationFetchError as e:
        st.session_state["vitals_error"] = f"Vitals fetch failed: {e}"
        st.session_state["vitals_error_status"] = e.status
    st.session_state["vitals_loaded"] = True


if not st.session_state["vitals_loaded"]:
    with st.spinner("Loading vitals…"):
        _load_vitals()

st.page_link("Home.py", label="Back to Demographics", icon="⬅️")

snapshot = store.get(ContextKey.PATIENT_DATA)
if snapshot:
    try:
        patient = Patient.from_resource(json.loads(snapshot))
        st.caption(f"{patient.display_name} · ID {patient.id}")
    except ValueError:
        pass

if st.session_state["vitals_error"]:
    st.error(st.session_state["vitals_error"])
    if st.session_state["vitals_error_status"] == 401 and st.button("Refresh session"):
        try:
            token_client.refresh()
            _load_vitals()
        except SmartError as e:
            st.session_state["vitals_error"] = f"Token refresh failed: {e}"
        st.rerun()

categories = browser.categories
if not categories and not st.session_state["vitals_error"]:
    st.info("No vital signs found for this patient.")

# Add a new vital
if store.get(ContextKey.ACCESS_TOKEN):
    if st.button("Add New Vital"):
        st.session_state["show_add_form"] = not st.session_state["show_add_form"]

if st.session_state["show_add_form"]:
    with st.form("add_vital_form", clear_on_submit=True):
        col1, col2 = st.columns(2)
        with col1:
            category = st.selectbox("Vital Type", list(LOINC_CODES.keys()))
            value = st.text_input("Value", placeholder="e.g. 98.6")
        with col2:
            unit = st.selectbox("Unit", list(UCUM_CODES.keys()))
            day = st.date_input("Date", value=datetime.now().date())
            at = st.time_input("Time", value=datetime.now().time().replace(second=0, microsecond=0))
        submitted = st.form_submit_button("Save Vital")
    if submitted:
        draft = VitalDraft(category=category, value=value, unit=unit, effective=datetime.combine(day, at))
        with st.spinner("Saving vital…"):
            try:
                ObservationSubmitter(store, token_client, settings).submit(draft)
            except SmartError as e:
                st.error(f"Failed to create vital: {e}")
            else:
                st.session_state["show_add_form"] = False
                st.success("Vital saved.")
                _load_vitals()
                st.rerun()

# Category picker
if categories:
    st.subheader("Categories")
    cols = st.columns(min(4, len(categories)))
    for i, cat in enumerate(categories):
        with cols[i % len(cols)]:
            if st.button(f"{cat.name} ({cat.count})", key=f"cat_{i}"):
                browser.select_category(cat.name)

if browser.selected is not None:
    window = browser.window
    st.subheader(browser.selected.name)
    st.caption(window.summary)
    for obs in browser.visible():
        c1, c2 = st.columns([2, 3])
        c1.markdown(f"**{format_value(obs)}**")
        c2.write(format_date(obs.effective))

    prev_col, next_col = st.columns(2)
    with prev_col:
        if st.button("Previous", disabled=not window.has_previous):
            browser.previous_page()
            st.rerun()
    with next_col:
        if st.button("Next", disabled=not window.has_more):
            browser.next_page()
            st.rerun()

render_footer()

# Launch page for the SMART Vitals Explorer.
# The EHR opens this page with ?iss=...&launch=..., and the authorization
# server sends the browser back here with ?code=...&state=...

# Import necessary libraries
import logging

import streamlit as st

from smart_vitals.config import load_configuration
from smart_vitals.context_store import SESSION_PARAM, open_tab_store
from smart_vitals.launch import LaunchMachine, LaunchStep
from smart_vitals.ui import redirect_browser, render_footer, render_patient_card

logging.basicConfig(level=logging.INFO)

st.set_page_config(
    page_title="SMART Vitals Explorer",
    layout="wide",
)

st.title("FHIR EHR App")

# Load persisted configuration into session state
settings = load_configuration()

# One machine per Streamlit session; the launch context itself lives on disk,
# in a file that belongs to this tab only
if "launch_machine" not in st.session_state:
    if "context_store" not in st.session_state:
        st.session_state["context_store"] = open_tab_store(st.query_params.to_dict())
    store = st.session_state["context_store"]
    st.session_state["launch_machine"] = LaunchMachine(store, settings, navigate=redirect_browser)
    st.session_state["launch_started"] = False
machine: LaunchMachine = st.session_state["launch_machine"]

# Run the launch exactly once per session; authorization codes are single-use
if not st.session_state.get("launch_started"):
    st.session_state["launch_started"] = True
    with st.spinner("Connecting to your EHR…"):
        state = machine.start(st.query_params.to_dict())
    if state.step == LaunchStep.SUCCESS:
        # Swap the consumed code/state for the tab's session id so a reload restores this patient
        st.query_params.clear()
        if machine.store.session_id:
            st.query_params[SESSION_PARAM] = machine.store.session_id

state = machine.state


def _reset() -> None:
    machine.reset()
    st.query_params.clear()
    # The vitals page caches the previous patient's bundle
    for key in ("vitals_browser", "vitals_loaded", "vitals_error", "vitals_error_status"):
        st.session_state.pop(key, None)


if state.step == LaunchStep.ERROR:
    st.header("Error")
    st.error(state.error)
    if st.button("Reset & Try Again"):
        _reset()
        st.rerun()

elif state.step == LaunchStep.SUCCESS and state.patient:
    st.header("Patient Information")
    render_patient_card(state.patient)
    col_a, col_b = st.columns(2)
    with col_a:
        st.page_link("pages/01_Vitals.py", label="View Vitals", icon="🩺")
    with col_b:
        if st.button("Start Over"):
            _reset()
            st.rerun()

else:
    st.markdown(f"**Step:** {state.step.value}")
    if state.issuer:
        st.markdown(f"**Issuer:** {state.issuer}")
    if state.launch:
        st.markdown(f"**Launch:** {state.launch}")
    if state.step == LaunchStep.WAITING:
        st.info("Waiting for a SMART launch. Open this app from your EHR.")
    elif state.step == LaunchStep.REDIRECTING:
        st.info("Redirecting to the authorization server…")

st.sidebar.page_link("pages/01_Vitals.py", label="Vitals", icon="🩺")
st.sidebar.page_link("pages/02_Settings.py", label="Settings", icon="⚙️")
render_footer()

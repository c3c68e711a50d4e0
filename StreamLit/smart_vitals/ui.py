import json

import streamlit as st
import streamlit.components.v1 as components

from .models import Patient


def render_footer() -> None:
    """Render a standard footer across pages."""
    st.markdown("---")
    st.caption(
        "SMART Vitals Explorer reads and writes vital signs through your EHR's SMART on FHIR API. "
        "Data stays in the EHR; this app keeps only the current tab's session."
    )


def render_patient_card(patient: Patient) -> None:
    st.subheader("Demographics")
    col1, col2 = st.columns(2)
    with col1:
        st.markdown(f"**Name:** {patient.display_name or 'Unknown'}")
        st.markdown(f"**ID:** {patient.id}")
    with col2:
        st.markdown(f"**Gender:** {patient.gender or 'Unknown'}")
        st.markdown(f"**Birth Date:** {patient.birth_date or 'Unknown'}")


def redirect_browser(url: str) -> None:
    """Send the whole browser tab (not the component iframe) to url."""
    components.html(f"<script>window.top.location.href = {json.dumps(url)};</script>", height=0)
    st.link_button("Continue to sign-in", url)

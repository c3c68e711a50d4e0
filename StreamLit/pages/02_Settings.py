# Settings page for the SMART client registration.
# Values from environment variables win over what is saved here.

import streamlit as st

from smart_vitals.audit import read_log_lines
from smart_vitals.config import load_configuration, save_configuration
from smart_vitals.ui import render_footer

st.set_page_config(page_title="Settings", layout="wide")

st.title("Settings")

settings = load_configuration()

with st.form("settings_form"):
    st.subheader("SMART client")
    client_id = st.text_input("Client ID", value=settings.client_id, type="password")
    redirect_uri = st.text_input(
        "Redirect URI",
        value=settings.redirect_uri,
        help="Must match the redirect URI registered with the EHR, including the trailing slash.",
    )
    scopes = st.text_input("Scopes", value=settings.scopes)
    request_timeout = st.number_input("Request timeout (seconds)", min_value=1.0, max_value=300.0, value=float(settings.request_timeout))
    allow_unknown_codes = st.checkbox(
        "Allow vitals without a known LOINC code",
        value=settings.allow_unknown_codes,
        help="When off, categories without a LOINC mapping are rejected before anything is sent.",
    )
    submitted = st.form_submit_button("Save Settings")

if submitted:
    try:
        save_configuration({
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scopes": scopes,
            "request_timeout": request_timeout,
            "allow_unknown_codes": allow_unknown_codes,
        })
    except OSError as e:
        st.error(f"Could not save settings: {e}")
    else:
        st.success("Settings saved.")
        st.rerun()

with st.expander("Recent activity"):
    # Launches, resets and chart writes; tokens and codes are never logged
    lines = read_log_lines(limit=50)
    if lines:
        st.code("\n".join(reversed(lines)), language="json")
    else:
        st.caption("No activity recorded yet.")

render_footer()

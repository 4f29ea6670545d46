#!/usr/bin/env python3
"""
dashboard/streamlit_app.py

Run:
  pip install -e ".[dashboard]"
  streamlit run dashboard/streamlit_app.py

The app expects the engine to run on BASE_URL (default http://localhost:8000).
"""
import os
import streamlit as st
import requests

BASE = os.environ.get("BASE_URL", "http://localhost:8000")


def fetch(path, key):
    try:
        r = requests.get(f"{BASE}{path}", timeout=5)
        r.raise_for_status()
        return r.json().get(key, [])
    except (requests.RequestException, ValueError) as e:
        st.error(f"Failed to fetch {BASE}{path}: {e}")
        return []


st.set_page_config(page_title="IVR Flow Engine", layout="wide")

st.title("IVR Flow Engine")

col1, col2 = st.columns([2, 1])

with col1:
    st.header("Active Sessions")
    if st.button("Refresh"):
        st.rerun()

    sessions = fetch("/api/sessions/", "sessions")
    if not sessions:
        st.info("No sessions found. Trigger a demo call with `demo/simulate_call.py`.")
    for s in sessions:
        state = "ended" if s.get("terminal") else s.get("status")
        with st.expander(f"Call: {s.get('call_id')}  ({state}) at {s.get('current_node')}"):
            st.write("Flow:", f"{s.get('flow_id')} v{s.get('flow_version')}")
            st.write("From:", s.get("from_number"))
            st.write("To:", s.get("to_number"))
            st.write("Awaiting input:", s.get("awaiting_input"))
            st.write("Variables:", s.get("variables") or {})
            st.write("Created:", s.get("created_at"))
            st.write("Last activity:", s.get("last_activity"))

            if st.button(f"Drop session {s.get('call_id')}"):
                try:
                    resp = requests.delete(f"{BASE}/api/sessions/{s.get('call_id')}", timeout=5)
                    st.write("Response:", resp.text)
                except requests.RequestException as e:
                    st.error(f"Failed to drop session: {e}")

    st.header("Routes")
    routes = fetch("/api/routes/", "routes")
    if routes:
        st.table([
            {"number": r.get("number"), "flow": r.get("flow_id"), "name": r.get("flow_name"),
             "voice": (r.get("voice_settings") or {}).get("voice")}
            for r in routes
        ])
    else:
        st.info("No numbers routed yet. POST /api/routes/ to add one.")

with col2:
    st.header("Recent Events")
    events = fetch("/api/events/?limit=50", "events")
    if events:
        for e in reversed(events):
            st.write(f"**{e.get('call_id')}** [{e.get('timestamp')}] {e.get('type')}")
            if e.get("node_id"):
                st.write("node:", e.get("node_id"))
            if e.get("data"):
                st.json(e.get("data"))
            st.write("---")
    else:
        st.info("No events yet.")

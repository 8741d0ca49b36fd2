"""Plotly figures and the streamlit slide deck."""

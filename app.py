#!/usr/bin/env python3
"""
app.py - Hugging Face Spaces entrypoint for the survey-trends Gradio demo.

Spaces serves the top-level `demo` object; do NOT call demo.launch() here.
"""

from survey_trends.gradio_ui import _build_ui

demo = _build_ui()

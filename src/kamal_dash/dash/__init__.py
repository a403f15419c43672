"""Textual dashboard: session state machine, supervisor and log buffer."""

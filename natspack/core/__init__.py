"""Shared runtime pieces: logging, settings, errors, templating and storage."""

"""Resilient live-audio streaming client for the Gemini bidirectional API."""

__version__ = "0.1.0"

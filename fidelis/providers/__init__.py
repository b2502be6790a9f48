"""Completion providers used by the experiment runner."""

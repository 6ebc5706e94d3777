"""Autopilot test suite."""

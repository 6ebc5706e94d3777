"""Command line interface for autopilot."""

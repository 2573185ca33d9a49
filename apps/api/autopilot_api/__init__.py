"""Autopilot trigger service HTTP API."""

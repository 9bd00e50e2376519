"""HTTP API for calendar sync, settings and schedule helpers."""

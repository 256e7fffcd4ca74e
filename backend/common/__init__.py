"""Shared, framework-free helpers used by the Django apps and the tracking client."""

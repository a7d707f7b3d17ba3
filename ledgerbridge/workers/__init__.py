"""Scheduled jobs, run with python -m."""

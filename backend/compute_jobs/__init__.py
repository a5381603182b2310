"""Compute jobs: API gateway, worker and notification fan-out."""

"""Helpers for blueprints and services (error envelope, pagination, commit)."""

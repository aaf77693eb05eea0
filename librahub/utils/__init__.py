"""Validation and CLI output helpers."""

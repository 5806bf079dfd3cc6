"""Shared utilities: logging setup and atomic filesystem helpers."""

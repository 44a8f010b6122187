"""Shared utilities: logging setup, retry helpers and subprocess execution."""

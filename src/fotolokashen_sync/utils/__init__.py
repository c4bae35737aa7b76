"""Shared helpers (logging, masking)."""

"""Shared utilities for fido-auth."""

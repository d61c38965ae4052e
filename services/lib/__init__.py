"""Shared library for the kioskdash backend services."""

"""Guarded lifecycle transitions for ride requests."""

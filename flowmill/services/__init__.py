"""Flowmill services."""

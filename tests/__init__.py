"""Historian test suite."""

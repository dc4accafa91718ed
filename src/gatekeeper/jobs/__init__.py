"""Standalone jobs."""

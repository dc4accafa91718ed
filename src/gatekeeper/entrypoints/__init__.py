"""Entrypoints - HTTP API."""

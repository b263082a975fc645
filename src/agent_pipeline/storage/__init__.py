"""Durable storage for task lifecycle records."""

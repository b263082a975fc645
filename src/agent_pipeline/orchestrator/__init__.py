"""Task orchestration engine: routing, retries, state, publication, cleanup."""

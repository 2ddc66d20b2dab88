"""Core orchestration, resilience and observability components."""

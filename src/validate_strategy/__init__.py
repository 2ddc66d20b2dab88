"""validate-strategy: multi-part analysis orchestration and recovery."""

__version__ = "0.4.0"

"""Event bus rule engine: events, filter patterns, transforms, rule executors and an informer."""

__version__ = "0.1.0"

__all__ = ["event", "informer", "pattern", "priority_queue", "rule", "server", "transform"]
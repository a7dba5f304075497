"""flowdeck: priority job scheduling, resilience and progress checkpoints."""

__version__ = "0.1.0"

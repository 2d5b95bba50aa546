"""NATS tasks and triggers for workflow playbooks."""

__version__ = "0.3.0"

__all__ = ["__version__"]

"""provisionctl — declarative, idempotent provisioning for AI workstations."""

__version__ = "0.1.0"

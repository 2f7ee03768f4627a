"""Conclave: committee consensus and compliance gating for phased workflows."""

__version__ = "0.1.0"

from .engine import WorkflowEngine
from .errors import ConclaveError

__all__ = ["WorkflowEngine", "ConclaveError"]

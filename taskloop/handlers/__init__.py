"""Handlers invoked when an agent run finishes."""

from taskloop.handlers.decomposition import DecompositionHandler, DecompositionOutcome
from taskloop.handlers.learning import IterationOutcome, LearningHandler
from taskloop.handlers.verification import VerificationHandler

__all__ = [
    "DecompositionHandler",
    "DecompositionOutcome",
    "IterationOutcome",
    "LearningHandler",
    "VerificationHandler",
]

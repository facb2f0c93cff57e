# pushcast/core/errors.py
"""
Typed errors for the dispatch pipeline.

Declaration-time mistakes raise immediately so they surface at startup.
Evaluation-time faults raise inside the pipeline and are absorbed by
``DispatchResolver.dispatch()``, which logs them and skips the event.
"""
from __future__ import annotations


class PushcastError(Exception):
    """Base class for all pushcast errors."""


class PolicyError(PushcastError):
    """A policy value is malformed or produced an unusable result."""


class RegistryValidationError(PolicyError):
    """Startup validation found incomplete handler declarations."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__(
            f"{len(problems)} handler policy problem(s): " + "; ".join(problems)
        )

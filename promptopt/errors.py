# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Exceptions that escape the optimization loop."""


class PromptOptError(Exception):
    """Base class for promptopt errors."""


class NoTasksError(PromptOptError):
    """Raised when an evaluation is requested with an empty task set."""


class PersistenceError(PromptOptError):
    """Raised when a checkpoint or task record cannot be written."""


class GenerationError(PromptOptError):
    """Raised by generator adapters for a failed generation call."""

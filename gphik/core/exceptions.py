# File: gphik/core/exceptions.py
"""
Error types raised by the GPHIK optimizer and its collaborators.

All of them abort the current top-level operation (optimize, add_example,
classify, restore). The optional ``operation`` and ``field`` attributes name
where the failure happened.
"""

from typing import Optional

from sklearn.exceptions import NotFittedError


class GPHIKError(Exception):
    """Base class for all GPHIK errors"""

    def __init__(self, message: str, operation: Optional[str] = None,
                 field: Optional[str] = None):
        self.operation = operation
        self.field = field

        context = []
        if operation is not None:
            context.append(f"operation={operation}")
        if field is not None:
            context.append(f"field={field}")
        if context:
            message = f"{message} [{', '.join(context)}]"

        super().__init__(message)


class ConfigurationError(GPHIKError, ValueError):
    """Unknown strategy or transform, or mutually exclusive settings"""


class NotTrainedError(GPHIKError, NotFittedError):
    """Query against a model whose caches have not been built"""


class DimensionMismatchError(GPHIKError, ValueError):
    """Parameter vector or feature dimensions do not fit the request"""


class SolverFailure(GPHIKError, RuntimeError):
    """Eigensolver or iterative linear solver failed internally"""


class CorruptStateError(GPHIKError, ValueError):
    """Persisted state could not be parsed"""

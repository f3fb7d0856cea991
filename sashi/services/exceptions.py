"""
Service Layer Exceptions

Failure classes raised by the workflow executor, recovery advisor and
function registry. The API layer maps each one to a status code.
"""


class SashiError(Exception):
    """Base class for all service errors."""

    status_code = 500


class WorkflowValidationError(SashiError):
    """Raised when a workflow is rejected before any action runs."""

    status_code = 400

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors) or "Invalid workflow format")


class FunctionNotFoundError(SashiError):
    """Raised when an action or tool call names a function the registry does not know."""

    status_code = 404

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Function {name} not found in registry")


class FunctionInvocationError(SashiError):
    """Raised when a registered function fails while running."""

    def __init__(self, name: str, cause: BaseException):
        self.name = name
        self.cause = cause
        super().__init__(str(cause) or cause.__class__.__name__)


class RecoveryFailedError(SashiError):
    """Raised when every recovery candidate was skipped or failed."""

    def __init__(self, attempts: list[str] | None = None):
        self.attempts = attempts or []
        super().__init__("All recovery attempts failed")

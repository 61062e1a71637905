"""
Compliance engine error taxonomy.

Structural errors (validation, not-found, invalid-token) abort the operation
that raised them and roll back its unit of work. DispatchError is recorded
per item by batch operations and never escapes a batch.
"""
from typing import Any, Iterable, Optional


class ComplianceError(Exception):
    """Base class for every error raised by the compliance services"""
    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ComplianceError):
    """Missing or malformed input"""
    status_code = 400


class InvalidQuestionError(ValidationError):
    """Survey answers reference questions outside the recipient's run"""

    def __init__(self, question_ids: Iterable[Any]):
        self.question_ids = sorted(question_ids, key=str)
        ids = ", ".join(str(q) for q in self.question_ids)
        super().__init__(f"Questions do not belong to this survey: {ids}")


class InvalidTransitionError(ValidationError):
    """Requested status change is not allowed from the current status"""
    status_code = 409

    def __init__(self, entity: str, current: Any, target: Any):
        self.entity = entity
        self.current = getattr(current, "value", current)
        self.target = getattr(target, "value", target)
        super().__init__(
            f"Cannot move {entity} from '{self.current}' to '{self.target}'"
        )


class NotFoundError(ComplianceError):
    status_code = 404

    def __init__(self, entity: str, identifier: Optional[Any] = None):
        self.entity = entity
        self.identifier = identifier
        if identifier is None:
            super().__init__(f"{entity} not found")
        else:
            super().__init__(f"{entity} {identifier} not found")


class InvalidTokenError(ComplianceError):
    """Token unknown, or its record is in the wrong state for the operation"""
    status_code = 404

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class AlreadyCompletedError(ComplianceError):
    status_code = 409

    def __init__(self, message: str = "Survey has already been completed"):
        super().__init__(message)


class NoAudienceError(ComplianceError):
    status_code = 409

    def __init__(self, message: str = "No eligible recipients found for the selected departments"):
        super().__init__(message)


class DispatchError(ComplianceError):
    """Notifier could not deliver a message"""
    status_code = 502


class TokenExhaustedError(ComplianceError):
    """No unique link token could be generated"""
    status_code = 503

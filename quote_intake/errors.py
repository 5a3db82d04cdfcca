# --------------------------- quote_intake/errors.py ----------------------------
"""
Quote Intake · Error Taxonomy

ValidationError       malformed or incomplete structured input, rejected before side effects
ExternalDependencyError  LLM / email / directory / web call failed
PersistenceError      datastore read or write failed

An ambiguous classification is not an error: it is the ``escalate`` decision.
"""

from typing import Optional


class QuoteIntakeError(Exception):
    """Base class for every error raised by the intake core."""


class ValidationError(QuoteIntakeError):
    """Structured input is malformed or incomplete."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidTransitionError(ValidationError):
    """A status change that the lifecycle graph does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity}: transition {current} -> {target} is not allowed", field="status")
        self.entity = entity
        self.current = current
        self.target = target


class ExternalDependencyError(QuoteIntakeError):
    """A call to an external collaborator failed."""

    def __init__(self, dependency: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{dependency}: {message}")
        self.dependency = dependency
        self.cause = cause


class PersistenceError(QuoteIntakeError):
    """A datastore operation failed."""

    def __init__(self, table: str, operation: str, message: str):
        super().__init__(f"{operation} on {table} failed: {message}")
        self.table = table
        self.operation = operation


class NotFoundError(QuoteIntakeError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id

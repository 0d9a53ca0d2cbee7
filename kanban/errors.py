"""
Domain exceptions.
"""


class KanbanError(Exception):
    """Base class for rule engine errors."""

    pass


class NotFoundError(KanbanError):
    """Raised when a user, rule or card does not exist."""

    pass


class PermissionDeniedError(KanbanError):
    """Raised when a user touches a rule they do not own."""

    pass


class DuplicateRuleError(KanbanError):
    """Raised when a rule name is already used by the same owner."""

    pass


class InvalidExpressionError(KanbanError):
    """Raised when a rule condition expression is empty or does not parse."""

    pass

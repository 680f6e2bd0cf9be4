"""
Exceptions raised by the bloat estimator and the online reindex coordinator.

``ReindexAborted`` subclasses are safe aborts: they are raised while the
reindex plan is still being built, before any statement has run, and the
coordinator turns them into a logged zero-effect result. ``ExecutionFault``
means a statement actually failed and is always propagated.
"""


class BloatQueryError(Exception):
    """A statistics or catalog lookup query failed."""

    def __init__(self, message, query=None):
        super().__init__(message)
        self.query = query


class ReindexError(Exception):
    """Base class for everything the reindex coordinator raises."""


class ReindexAborted(ReindexError):
    """The rebuild was refused before any statement was executed."""

    def __init__(self, index_name, reason):
        super().__init__(f"{index_name}: {reason}")
        self.index_name = index_name
        self.reason = reason


class NotFound(ReindexAborted):
    pass


class UnparsableDefinition(ReindexAborted):
    pass


class UnsupportedConstraintKind(ReindexAborted):
    pass


class UnsupportedDependentKind(ReindexAborted):
    pass


class ExecutionFault(ReindexError):
    """A generated statement failed; its enclosing transaction was rolled back."""

    def __init__(self, step_name, statement, cause):
        super().__init__(f"Step '{step_name}' failed on statement [{statement}]: {cause}")
        self.step_name = step_name
        self.statement = statement
        self.cause = cause

"""
Configuration-level exceptions for the intake flow engine.

User-input problems (unparseable answers, business-rule violations) are
NOT exceptions: they come back as result objects (see results.py) so the
caller can re-prompt. The exceptions below signal catalog or routing
defects that no user answer can fix.
"""


class CatalogError(ValueError):
    """Catalog JSON is malformed or internally inconsistent."""


class UnknownQuestionError(CatalogError):
    """A pointer, rule or stage references a question id that does not exist."""

    def __init__(self, qid: str, context: str = ""):
        self.qid = qid
        self.context = context
        message = f"Unknown question id '{qid}'"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class ConditionSyntaxError(ValueError):
    """Condition expression could not be tokenized or parsed."""

    def __init__(self, expression: str, reason: str, position: int = -1):
        self.expression = expression
        self.reason = reason
        self.position = position
        where = f" at position {position}" if position >= 0 else ""
        super().__init__(f"Invalid condition{where}: {reason} in {expression!r}")


class RouterNoEligibleTarget(RuntimeError):
    """
    Routing cannot make progress.

    Raised when the state machine keeps landing on sections that can be
    neither asked nor completed. Indicates a catalog configuration error.
    """

    def __init__(self, user_id: str, section_key: str = "", attempts: int = 0):
        self.user_id = user_id
        self.section_key = section_key
        self.attempts = attempts
        super().__init__(
            f"No eligible routing target for user '{user_id}' "
            f"(last section '{section_key}', {attempts} attempts)"
        )

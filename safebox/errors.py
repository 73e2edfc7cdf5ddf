class IngestValidationError(ValueError):
    """A payload that does not match the schema for its record kind.

    ``kind`` is one of ``missing-field``, ``wrong-type`` or ``invalid-enum``.
    """

    MISSING_FIELD = "missing-field"
    WRONG_TYPE = "wrong-type"
    INVALID_ENUM = "invalid-enum"

    def __init__(self, kind: str, field: str | None, message: str):
        super().__init__(message)
        self.kind = kind
        self.field = field
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "kind": self.kind, "field": self.field}


class PersistenceError(RuntimeError):
    pass


class PersistenceTimeout(PersistenceError):
    pass

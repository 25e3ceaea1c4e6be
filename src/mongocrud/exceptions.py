"""
Library-wide exception definitions.
Organized by concern: setup/configuration, persistence, model lookup.
"""


# ==================== Setup Exceptions ====================

class ConfigurationError(Exception):
    """Raised synchronously at setup when a schema registration is malformed. Never retried."""

    def __init__(self, message: str, schema=None):
        self.message = message
        self.schema = schema
        super().__init__(message)


# ==================== Persistence Exceptions ====================

class DatabaseError(Exception):
    """Raised for any store failure on create, update, delete or find."""

    def __init__(self, e=None, message=None):
        if message:
            super().__init__(message)
        elif e:
            super().__init__(str(e))
        else:
            super().__init__("Database error")
        self.error = e
        self.message = message

    @property
    def code(self):
        """Driver error code of the wrapped error, if any"""
        return getattr(self.error, 'code', None)


class DuplicateConstraintError(DatabaseError):
    """Raised when a unique constraint is violated on persist.

    Expected and retryable inside CrudService._create_with_retry.
    """

    def __init__(self, e=None, message=None):
        super().__init__(e, message or (None if e else "Duplicate constraint violation"))


# Names used by the error taxonomy
PersistenceError = DatabaseError
CollisionError = DuplicateConstraintError


# ==================== Registry Exceptions ====================

class ModelNotFound(Exception):
    """Raised when a requested schema's model map is not registered"""

    def __init__(self, schema: str, message=None):
        self.schema = schema
        self.message = message or f"No models registered for schema: {schema}"
        super().__init__(self.message)

from __future__ import annotations

from typing import Optional


class TableError(Exception):
    """Base error for store, registry and round failures.

    ``code`` is the machine-readable value the relay sends back in ``error``
    frames; ``msg`` is the human-readable explanation.
    """

    code = "TABLE_ERROR"

    def __init__(self, msg: str, code: Optional[str] = None) -> None:
        super().__init__(msg)
        self.msg = msg
        if code is not None:
            self.code = code


class NotFoundError(TableError):
    code = "NOT_FOUND"


class ConflictError(TableError):
    code = "CONFLICT"


class SchemaError(TableError):
    code = "SCHEMA_MISSING"


class StoreUnavailableError(TableError):
    code = "STORE_UNAVAILABLE"


class SessionExpiredError(TableError):
    code = "SESSION_EXPIRED"


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (TableError, NotFoundError, ConflictError, SchemaError, StoreUnavailableError, SessionExpiredError)
}


def error_from_code(code: str, msg: str) -> TableError:
    cls = ERRORS_BY_CODE.get(code, TableError)
    return cls(msg, code=code)

# catalog/errors.py
class AppError(Exception):
    """
    Operational error carrying the HTTP status it should be reported with.

    Raised by the service layer and turned into an error envelope by the
    exception handlers registered in api/errors.py.

    Args:
        message (str): Human readable message returned to the client
        status_code (int): HTTP status code. Defaults to 500
    """

    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class RequestValidationFailed(AppError):
    """Input rejected before reaching the store; `errors` lists every bad field."""

    status_code = 400

    def __init__(self, message="Validation failed", errors=None):
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 400


class StoreUnavailableError(AppError):
    status_code = 500


def format_validation_errors(errors, default_field="body"):
    """
    Flatten pydantic error dicts into [{field, message}] entries.

    The location prefix added by FastAPI ("body", "query", "path") is
    dropped so the field is named as the client sent it. Model-level errors
    have no location and are reported under `default_field`.
    """
    out = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        msg = err.get("msg", "Invalid value")
        if err.get("type") == "value_error" and "error" in err.get("ctx", {}):
            msg = str(err["ctx"]["error"])
        out.append({"field": ".".join(loc) or default_field, "message": msg})
    return out

class AppError(Exception):
    """Base for errors rendered as ``{"success": false, "error": {...}}``."""

    code = "error"
    status = 400

    def __init__(self, message="", code=None, status=None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status


class ValidationError(AppError):
    code = "validation_error"
    status = 400


class NotFoundError(AppError):
    code = "not_found"
    status = 404


class ConflictError(AppError):
    code = "conflict"
    status = 409


class PermissionDenied(AppError):
    code = "forbidden"
    status = 403


class UpstreamGatewayError(AppError):
    code = "gateway_error"
    status = 502

class LedgerError(ValueError):
    status_code = 400


class ValidationError(LedgerError):
    status_code = 400


class NotFoundError(LedgerError):
    status_code = 404


class ForbiddenError(LedgerError):
    status_code = 403


class Unauthorized(LedgerError):
    status_code = 401


class InternalError(LedgerError):
    status_code = 500

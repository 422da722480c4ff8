from __future__ import annotations


class MarketError(RuntimeError):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(MarketError):
    status_code = 400


class DuplicateKey(MarketError):
    status_code = 400


class Unauthorized(MarketError):
    status_code = 401


class Forbidden(MarketError):
    status_code = 403


class NotFound(MarketError):
    status_code = 404


class Conflict(MarketError):
    status_code = 409


class InternalError(MarketError):
    status_code = 500

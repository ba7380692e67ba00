from typing import List, Optional


class AppError(Exception):
    status_code = 500
    message = "Server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[dict]] = None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.errors = errors


class ValidationFailed(AppError):
    status_code = 400
    message = "Validation failed"


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class InsufficientStock(AppError):
    status_code = 400
    message = "Insufficient stock"

    def __init__(self, gem_name: str):
        super().__init__(f"Insufficient stock for {gem_name}")
        self.gem_name = gem_name


class InvalidTransition(AppError):
    status_code = 400
    message = "Invalid status transition"


class AlreadyCancelled(AppError):
    status_code = 400
    message = "Order is already cancelled"


class Conflict(AppError):
    status_code = 400
    message = "Resource already exists"


class Unauthorized(AppError):
    status_code = 401
    message = "Not authorized"

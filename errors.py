"""
Error types raised by the service layer.

Each error knows the HTTP status it maps to; main.py turns them into {"error": message} bodies.
"""

from typing import Optional


class VendingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(VendingError):
    status_code = 400


class NotFoundError(VendingError):
    status_code = 404

    def __init__(self, entity: str):
        super().__init__(f"{entity.capitalize()} does not exist!")
        self.entity = entity


class ConflictError(VendingError):
    status_code = 409


class AlreadyAttachedError(ConflictError):
    def __init__(self, machine_id: str):
        super().__init__(f"Machine {machine_id} is already included!")
        self.machine_id = machine_id


class OutOfStockError(VendingError):
    status_code = 409

    def __init__(self, machine_id: str, slot_key: str):
        super().__init__("There are no items to remove!")
        self.machine_id = machine_id
        self.slot_key = slot_key


class AuthenticationError(VendingError):
    status_code = 401


class ConfigurationError(VendingError):
    status_code = 503


class ExternalServiceError(VendingError):
    status_code = 502

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class StorageError(VendingError):
    status_code = 503

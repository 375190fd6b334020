"""Error kinds raised by the core and mapped to HTTP responses in ``main``."""


class OrderDeskError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderDeskError, ValueError):
    status_code = 400


class InsufficientStock(OrderDeskError):
    status_code = 409

    def __init__(self, product_id: int, requested: int):
        super().__init__(f"insufficient stock for product {product_id}")
        self.product_id = product_id
        self.requested = requested


class InvalidTransition(OrderDeskError):
    status_code = 400


class Forbidden(OrderDeskError):
    status_code = 403


class NotFound(OrderDeskError):
    status_code = 404


class Conflict(OrderDeskError):
    status_code = 409

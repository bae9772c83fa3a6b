"""Domain errors. Each carries the HTTP status the API answers with."""


class ShopError(Exception):
    status_code = 500
    default_message = "Server Error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ShopError):
    status_code = 400
    default_message = "Invalid request"


class EmptyCartError(ValidationError):
    default_message = "No order items"


class AuthenticationError(ShopError):
    status_code = 401
    default_message = "Not authorized to access this route"


class PaymentFailedError(ShopError):
    status_code = 402
    default_message = "Payment not completed"


class ForbiddenError(ShopError):
    status_code = 403
    default_message = "Not authorized"


class NotFoundError(ShopError):
    status_code = 404
    default_message = "Resource not found"


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id=None):
        super().__init__(f"Product {product_id} not found" if product_id else "Product not found")


class OrderNotFoundError(NotFoundError):
    default_message = "Order not found"


class UserNotFoundError(NotFoundError):
    default_message = "User not found"


class InsufficientStockError(ShopError):
    status_code = 409

    def __init__(self, product_name=None):
        super().__init__(f"Insufficient stock for {product_name}" if product_name else "Insufficient stock")


class InvalidStateError(ShopError):
    status_code = 409
    default_message = "Invalid order state"


class PaymentGatewayError(ShopError):
    status_code = 503
    default_message = "Payment gateway unavailable"


class PaymentTimeoutError(PaymentFailedError):
    status_code = 504
    default_message = "Payment gateway timed out"

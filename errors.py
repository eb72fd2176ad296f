"""
Application errors.

Services raise these; the app turns them into ``{"detail": message}``
responses carrying the class ``status_code``.
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(StorefrontError):
    status_code = 401

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class Forbidden(StorefrontError):
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class ValidationError(StorefrontError):
    status_code = 400


class EmptyCart(ValidationError):
    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class InvalidStatus(ValidationError):
    pass


class NoFieldsToUpdate(ValidationError):
    def __init__(self, message: str = "No fields to update"):
        super().__init__(message)


class NotFound(StorefrontError):
    status_code = 404


class ProductNotFound(NotFound):
    def __init__(self, product_id):
        super().__init__(f"Product with ID {product_id} not found")
        self.product_id = product_id


class OrderNotFound(NotFound):
    def __init__(self, order_id):
        super().__init__("Order not found")
        self.order_id = order_id


class ReviewNotFound(NotFound):
    def __init__(self, review_id):
        super().__init__("Review not found")
        self.review_id = review_id


class CategoryNotFound(NotFound):
    def __init__(self, slug):
        super().__init__("Category not found")
        self.slug = slug


class TraderNotFound(NotFound):
    def __init__(self, user_id):
        super().__init__("Trader not found")
        self.user_id = user_id


class InsufficientStock(StorefrontError):
    status_code = 400

    def __init__(self, product_id, requested: int, available: int):
        super().__init__(f"Insufficient stock for product {product_id}")
        self.product_id = product_id
        self.requested = requested
        self.available = available


class DuplicateReview(StorefrontError):
    status_code = 400

    def __init__(self, message: str = "You have already reviewed this product"):
        super().__init__(message)


class Conflict(StorefrontError):
    status_code = 409

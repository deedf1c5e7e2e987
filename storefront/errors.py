"""Custom exceptions for the storefront service."""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500


class NotFoundError(StorefrontError):
    """Raised when an order, payment or product id doesn't resolve."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found with ID: {entity_id}")


class ValidationError(StorefrontError):
    """Raised when a request is well-formed but not acceptable."""

    status_code = 400


class UnsupportedProviderError(ValidationError):
    def __init__(self, provider):
        self.provider = provider
        super().__init__(f"Unsupported payment provider: {getattr(provider, 'value', provider)}")


class InvalidStatusTransitionError(ValidationError):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move order from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}"
        )


class InvalidSignatureError(StorefrontError):
    """Raised when a webhook fails provider verification."""

    status_code = 400

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message)

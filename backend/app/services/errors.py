from typing import Optional


class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""


class ValidationError(MarketplaceError):
    pass


class InvalidTransitionError(ValidationError):
    def __init__(self, state: str, transition: str, message: Optional[str] = None):
        self.state = state
        self.transition = transition
        super().__init__(message or f"Cannot {transition} a request in state {state}")


class InvalidCoordinateError(ValidationError):
    pass


class NotFoundError(MarketplaceError):
    pass


class AuthorizationError(MarketplaceError):
    pass


class ConflictError(MarketplaceError):
    pass


class DuplicateApplicationError(ConflictError):
    code = "already_applied"


class DeliveryError(MarketplaceError):
    pass

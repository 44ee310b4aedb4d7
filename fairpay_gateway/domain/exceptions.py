"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class MissingSignature(DomainException):
    """Webhook request carries no Stripe-Signature header"""

    pass


class InvalidSignature(DomainException):
    """Webhook signature does not match the payload and shared secret"""

    pass


class MalformedMetadata(DomainException):
    """Metadata envelope on a provider object cannot be decoded"""

    pass


class PaymentProviderError(DomainException):
    """Stripe API returned an error or is unavailable"""

    pass


class InvalidTransition(DomainException):
    """Requested status change is not allowed for the entity"""

    pass


class NotFound(DomainException):
    """Entity does not exist or is not visible to the caller"""

    pass


class AccessDenied(DomainException):
    """Entity exists but belongs to another user"""

    pass


class InvalidRequest(DomainException):
    """Caller input cannot be acted upon"""

    pass

from typing import Any, Dict, Optional


class DataLayerException(Exception):
    """Base exception for data layer errors"""
    def __init__(self, message: str, context: Dict[str, Any] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

class RecordNotFoundException(DataLayerException):
    """Specific exception for when a record is not found"""
    pass

class IntegrityException(DataLayerException):
    """Unique or foreign key constraint violated"""
    pass

class GeneralDataException(DataLayerException):
    """Any other database failure"""
    pass


# Business errors. Each carries a human readable `reason` that the
# exception handlers in main.py pass straight through to the client.

class BillingValidationError(Exception):
    def __init__(self, field: str, reason: str = "Invalid billing input"):
        self.field = field
        self.reason = reason
        super().__init__(reason)

class SubscriptionInactive(Exception):
    def __init__(self, owner_id: Any, reason: str = "Subscription is inactive or expired"):
        self.owner_id = owner_id
        self.reason = reason
        super().__init__(reason)

class TierLimitExceeded(Exception):
    def __init__(self, resource: str, count: int, limit: int, reason: Optional[str] = None):
        self.resource = resource
        self.count = count
        self.limit = limit
        label = resource.replace("_", " ")
        self.reason = reason or f"{label.capitalize()} limit reached ({count}/{limit}). Upgrade your plan."
        super().__init__(self.reason)

class AccessDenied(Exception):
    def __init__(self, user_id: Any, reason: str = "You are not allowed to access this resource"):
        self.user_id = user_id
        self.reason = reason
        super().__init__(reason)

class PaymentProviderError(Exception):
    def __init__(self, operation: str, reason: str = "Payment provider request failed", status_code: Optional[int] = None):
        self.operation = operation
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)

class WebhookSignatureInvalid(Exception):
    def __init__(self, reason: str = "Invalid webhook signature"):
        self.reason = reason
        super().__init__(reason)

class DuplicateWebhook(Exception):
    def __init__(self, provider_event_id: str, event_type: str, reason: str = "Webhook already received"):
        self.provider_event_id = provider_event_id
        self.event_type = event_type
        self.reason = reason
        super().__init__(reason)

from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    OWNER = "owner"
    STAFF = "staff"

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INCOMPLETE = "incomplete"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"

class PaymentType(str, Enum):
    REGISTRATION = "registration"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"
    UPDATE = "update"

class GatedResource(str, Enum):
    RESTAURANT = "restaurant"
    CATEGORY = "category"
    MENU_ITEM = "menu_item"
    STAFF = "staff"

class WebhookEventType(str, Enum):
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_PENDING = "payment.pending"

class NotificationType(str, Enum):
    PAYMENT_SUCCESS = "payment_success_email"
    PAYMENT_FAILED = "payment_failed_email"
    PAYMENT_PENDING = "payment_pending_email"
    STAFF_WELCOME = "staff_welcome_email"

"""
TierSync - Status Values
String constants stored in the status columns.
"""


class SubscriptionStatus:
    ACTIVE = "ACTIVE"
    GRACE = "GRACE"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"


class PlanChangeStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    PAYMENT_NEEDED = "PAYMENT_NEEDED"


class SessionStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class SessionMode:
    SUBSCRIPTION = "SUBSCRIPTION"
    PAYMENT = "PAYMENT"


class PaymentStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"


class BillingLength:
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


FREE_TIER = "FREE"

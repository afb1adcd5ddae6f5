from app.models.base import Base
from app.models.models import ActivityLog, User, UserRole
from app.models.plan import Plan
from app.models.subscription import PaymentConfirmationRecord, Subscription
from app.models.usage_event import UsageEvent

__all__ = [
    "ActivityLog",
    "Base",
    "PaymentConfirmationRecord",
    "Plan",
    "Subscription",
    "UsageEvent",
    "User",
    "UserRole",
]

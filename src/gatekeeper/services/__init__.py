"""Application services."""

from .billing import BillingFailureHandler, BillingOutcome, InvoiceEvent, SubscriptionEvent
from .billing_enforcement import BillingEnforcer
from .flags import FeatureFlag, FeatureFlagCache
from .notification import NotificationService
from .roles import RetryPolicy, RoleAssignmentService
from .tasks import BackgroundTask, BackgroundTaskQueue, TaskStatus

__all__ = [
    "BackgroundTask",
    "BackgroundTaskQueue",
    "BillingEnforcer",
    "BillingFailureHandler",
    "BillingOutcome",
    "FeatureFlag",
    "FeatureFlagCache",
    "InvoiceEvent",
    "NotificationService",
    "RetryPolicy",
    "RoleAssignmentService",
    "SubscriptionEvent",
    "TaskStatus",
]

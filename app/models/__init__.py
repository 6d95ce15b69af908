from app.models.user import User  # noqa: F401
from app.models.plan import Plan, PlanInterval  # noqa: F401
from app.models.billing import (  # noqa: F401
    LIVE_SUBSCRIPTION_STATUSES,
    CancelReason,
    Payment,
    PaymentStatus,
    ProcessedEvent,
    ProcessedEventStatus,
    Subscription,
    SubscriptionStatus,
)
from app.models.notification import (  # noqa: F401
    Notification,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    RelatedEntityType,
)
from app.models.scheduler import (  # noqa: F401
    EmailJobType,
    JobQueueName,
    JobRecord,
    JobStatus,
    RecurringJob,
    SubscriptionJobType,
)

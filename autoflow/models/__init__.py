from .integration import IntegrationRecord
from .billing_customer import CustomerRecord
from .subscription import SubscriptionRecord
from .billing_event import BillingEventLog
from .usage import UsageRecord, Workflow, ContextDocument

__all__ = [
    "IntegrationRecord",
    "CustomerRecord",
    "SubscriptionRecord",
    "BillingEventLog",
    "UsageRecord",
    "Workflow",
    "ContextDocument",
]

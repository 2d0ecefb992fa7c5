# Models package — import all models here so Alembic can discover them.

from crm.models.user import User  # noqa: F401
from crm.models.workspace import Workspace, WorkspaceMember  # noqa: F401
from crm.models.billing import (  # noqa: F401
    BillingSubscription,
    BillingSubscriptionItem,
)
from crm.models.stripe_event import StripeEvent  # noqa: F401

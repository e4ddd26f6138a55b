from __future__ import annotations

from mailsync.models.base import Base as Base  # noqa: F401
from mailsync.models.crm import Deal, Lead, Organization, Person, PersonEmail  # noqa: F401
from mailsync.models.enums import (  # noqa: F401
    ConnectionMode,
    JobStatus,
    JobType,
    MessageFolder,
    ProviderKind,
    TrackingEventType,
)
from mailsync.models.identity import User  # noqa: F401
from mailsync.models.jobs import BgJob  # noqa: F401
from mailsync.models.mail import (  # noqa: F401
    AccountCredential,
    EmailAccount,
    EmailMessage,
    EmailThread,
    EmailTrackingEvent,
)

"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from portal.models.audit_entries import AuditEntry
from portal.models.email_logs import EmailLog
from portal.models.notification_events import NotificationEvent
from portal.models.organization_members import OrganizationMember
from portal.models.organizations import Organization
from portal.models.routing_rules import RoutingRule
from portal.models.service_requests import ServiceRequest
from portal.models.teams import Team, TeamMember
from portal.models.users import User

__all__ = [
    "AuditEntry",
    "EmailLog",
    "NotificationEvent",
    "Organization",
    "OrganizationMember",
    "RoutingRule",
    "ServiceRequest",
    "Team",
    "TeamMember",
    "User",
]

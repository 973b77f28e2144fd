"""
Tools Package
Outbound integrations for the CareCircle system
"""

from .notification_service import (
    InvitationNotifier,
    InvitationMessage,
    NotificationResult,
    invitation_notifier,
    render_invitation
)

__all__ = [
    # Notification Service
    "InvitationNotifier",
    "InvitationMessage",
    "NotificationResult",
    "invitation_notifier",
    "render_invitation",
]

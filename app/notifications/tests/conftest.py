"""
Test configuration and fixtures for notification tests.

Usage:
    def test_example(user, unread_notification, authenticated_client):
        response = authenticated_client.get("/api/v1/notifications/")
        assert response.status_code == 200
"""

import pytest
from rest_framework.test import APIClient

from core.tests.factories import UserFactory
from notifications.tests.factories import NotificationFactory


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    """User receiving notifications."""
    return UserFactory()


@pytest.fixture
def other_user(db):
    """Another user for scoping tests."""
    return UserFactory()


# =============================================================================
# Notification Fixtures
# =============================================================================


@pytest.fixture
def unread_notification(db, user):
    return NotificationFactory(recipient=user, title="Unread Notification")


@pytest.fixture
def read_notification(db, user):
    from django.utils import timezone

    return NotificationFactory(recipient=user, title="Read Notification", is_read=True, read_at=timezone.now())


@pytest.fixture
def mixed_notifications(db, user):
    """
    Three unread and two read notifications of two event types.

    Returns dict with 'unread', 'read', and 'all' keys.
    """
    unread = [
        NotificationFactory(recipient=user, event_type="payment_captured"),
        NotificationFactory(recipient=user, event_type="payment_captured"),
        NotificationFactory(recipient=user, event_type="refund_issued"),
    ]
    read = [NotificationFactory(recipient=user, event_type="refund_issued", is_read=True) for _ in range(2)]
    return {"unread": unread, "read": read, "all": unread + read}


@pytest.fixture
def other_user_notifications(db, other_user):
    return NotificationFactory.create_batch(3, recipient=other_user)


# =============================================================================
# API Client Fixtures
# =============================================================================


@pytest.fixture
def api_client():
    """Unauthenticated API client."""
    return APIClient()


@pytest.fixture
def authenticated_client(user):
    """API client authenticated as the default user fixture."""
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def other_user_client(other_user):
    client = APIClient()
    client.force_authenticate(user=other_user)
    return client

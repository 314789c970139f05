"""
URL configuration for the Django application.

The `urlpatterns` list routes URLs to views. This is the root URL configuration
that includes all app-specific routes.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/escrow/                - Escrow endpoints
        orders/                    - Create order (POST)
        orders/{id}/               - Order money state (GET)
        orders/{id}/authorize/     - Place authorization hold
        orders/{id}/adjustments/   - Request price adjustment
        orders/{id}/fulfillment/   - Record fulfillment
        orders/{id}/capture/       - Capture and schedule payout
        orders/{id}/refunds/       - Issue refund
        orders/{id}/cancel/        - Cancel order
        orders/{id}/refund-policy/ - Change refund policy (PATCH)
        adjustments/{id}/respond/  - Approve or reject adjustment
        adjustments/{id}/cancel/   - Withdraw adjustment
        wallet/                    - Balance and recent transactions
        webhooks/stripe/           - Stripe webhook endpoint (POST)
    /api/v1/notifications/         - Notification inbox
        {id}/read/                 - Mark one as read
        read-all/                  - Mark all as read
        unread-count/              - Unread count

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
# All routes here are prefixed with /api/v1/ automatically
api_v1_patterns = [
    # Escrow
    path("escrow/", include("escrow.urls")),
    # Notifications
    path("notifications/", include("notifications.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Escrow Admin"
admin.site.site_title = "Admin Portal"
admin.site.index_title = "Welcome to the Admin Portal"

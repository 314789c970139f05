"""
URL configuration for the escrow API.

URL Structure:
    Orders:
        /orders/                       POST
        /orders/{id}/                  GET
        /orders/{id}/authorize/        POST
        /orders/{id}/adjustments/      POST
        /orders/{id}/fulfillment/      POST
        /orders/{id}/capture/          POST
        /orders/{id}/refunds/          POST
        /orders/{id}/cancel/           POST
        /orders/{id}/refund-policy/    PATCH
        /orders/{id}/disputes/         POST

    Adjustments:
        /adjustments/{id}/respond/     POST
        /adjustments/{id}/cancel/      POST

    Disputes:
        /disputes/{id}/resolve/        POST
        /disputes/{id}/withdraw/       POST

    Wallet:
        /wallet/                       GET

    Processor webhooks:
        /webhooks/stripe/              POST (signature-verified, no auth)

All URLs are prefixed with /api/v1/escrow/ in the main URL configuration.
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from escrow.views import AdjustmentViewSet, DisputeViewSet, OrderViewSet, WalletView
from escrow.webhooks.views import stripe_webhook

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="order")
router.register(r"adjustments", AdjustmentViewSet, basename="adjustment")
router.register(r"disputes", DisputeViewSet, basename="dispute")

app_name = "escrow"

urlpatterns = [
    path("", include(router.urls)),
    path("wallet/", WalletView.as_view(), name="wallet"),
    path("webhooks/stripe/", stripe_webhook, name="stripe-webhook"),
]

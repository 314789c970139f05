"""
Notification inbox API.

Escrow outbox events land here; the views only read them and flip the
read flag.

Endpoints:
    GET  /api/v1/notifications/              - Inbox (filters: is_read, event_type, order)
    GET  /api/v1/notifications/{id}/         - One notification
    GET  /api/v1/notifications/unread-count/ - Badge count
    POST /api/v1/notifications/{id}/read/    - Mark one as read
    POST /api/v1/notifications/read-all/     - Mark the whole inbox as read
"""

from __future__ import annotations

from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema, extend_schema_view
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from notifications.models import Notification
from notifications.serializers import (
    MarkAllReadResponseSerializer,
    NotificationSerializer,
    UnreadCountSerializer,
)
from notifications.services import NotificationService

INBOX_FILTERS = [
    OpenApiParameter("is_read", bool, OpenApiParameter.QUERY, description="Only read (true) or unread (false)"),
    OpenApiParameter("event_type", str, OpenApiParameter.QUERY, description="Escrow event, e.g. payment_captured"),
    OpenApiParameter("order", str, OpenApiParameter.QUERY, description="Escrow order id the event belongs to"),
]


@extend_schema_view(
    list=extend_schema(
        operation_id="list_notifications",
        summary="List notifications",
        parameters=INBOX_FILTERS,
        tags=["Notifications"],
    ),
    retrieve=extend_schema(operation_id="get_notification", summary="Get notification", tags=["Notifications"]),
)
class NotificationViewSet(viewsets.ReadOnlyModelViewSet):
    """The authenticated user's inbox. Other users' rows are invisible (404)."""

    permission_classes = [IsAuthenticated]
    serializer_class = NotificationSerializer

    def get_queryset(self):
        queryset = Notification.objects.filter(recipient=self.request.user)
        params = self.request.query_params

        if "is_read" in params:
            queryset = queryset.filter(is_read=params["is_read"].lower() == "true")
        if params.get("event_type"):
            queryset = queryset.filter(event_type=params["event_type"])
        if params.get("order"):
            queryset = queryset.filter(data__order_id=params["order"])
        return queryset

    @extend_schema(
        operation_id="get_unread_notification_count",
        summary="Get unread notification count",
        responses={200: UnreadCountSerializer},
        tags=["Notifications"],
    )
    @action(detail=False, methods=["get"], url_path="unread-count")
    def unread_count(self, request):
        count = Notification.objects.filter(recipient=request.user, is_read=False).count()
        return Response(UnreadCountSerializer({"unread_count": count}).data)

    @extend_schema(
        operation_id="mark_notification_read",
        summary="Mark notification as read",
        request=None,
        responses={200: NotificationSerializer, 404: OpenApiResponse(description="Not in your inbox")},
        tags=["Notifications"],
    )
    @action(detail=True, methods=["post"])
    def read(self, request, pk=None):
        result = NotificationService.mark_as_read(self.get_object(), request.user)
        if not result.success:
            return Response({"detail": result.error}, status=status.HTTP_400_BAD_REQUEST)
        return Response(self.get_serializer(result.data).data)

    @extend_schema(
        operation_id="mark_all_notifications_read",
        summary="Mark all notifications as read",
        request=None,
        responses={200: MarkAllReadResponseSerializer},
        tags=["Notifications"],
    )
    @action(detail=False, methods=["post"], url_path="read-all")
    def read_all(self, request):
        result = NotificationService.mark_all_as_read(request.user)
        return Response(MarkAllReadResponseSerializer({"marked_count": result.data}).data)

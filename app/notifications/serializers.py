"""Serializers for the notification inbox."""

from __future__ import annotations

from rest_framework import serializers

from notifications.models import Notification


class NotificationSerializer(serializers.ModelSerializer):
    """Read-only. ``order_id`` is lifted out of the escrow event payload."""

    order_id = serializers.SerializerMethodField()

    class Meta:
        model = Notification
        fields = ["id", "event_type", "order_id", "title", "body", "data", "is_read", "read_at", "created_at"]
        read_only_fields = fields

    def get_order_id(self, obj: Notification) -> str | None:
        return (obj.data or {}).get("order_id")


class UnreadCountSerializer(serializers.Serializer):
    unread_count = serializers.IntegerField()


class MarkAllReadResponseSerializer(serializers.Serializer):
    marked_count = serializers.IntegerField()

"""
Abstract model mixins combined with core.models.BaseModel.

Available Mixins:
    UUIDPrimaryKeyMixin: UUID primary key generated client-side
"""

from __future__ import annotations

import uuid

from django.db import models


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use a UUID primary key instead of an auto-increment integer.

    The id is assigned when the instance is constructed, so ``self.pk`` is
    already set before the first save. Use ``self._state.adding`` to tell
    an insert from an update.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True

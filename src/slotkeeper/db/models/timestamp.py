from __future__ import annotations

import sedate

from datetime import datetime
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped


def utcnow() -> datetime:
    return sedate.utcnow()


class TimestampMixin:
    """ Adds created/modified timestamps to a record.

    Both are deferred, they are only read when looking into the history of
    a booking. The modified timestamp is also set by the bulk updates of
    the version counted status changes.

    """

    created: Mapped[datetime] = mapped_column(
        default=utcnow,
        deferred=True
    )

    modified: Mapped[datetime | None] = mapped_column(
        onupdate=utcnow,
        deferred=True
    )

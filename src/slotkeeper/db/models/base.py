from __future__ import annotations

import sedate

from datetime import datetime
from sqlalchemy import types
from sqlalchemy.orm import registry
from sqlalchemy.orm import DeclarativeBase


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from sqlalchemy.engine import Dialect

    _Base = types.TypeDecorator[datetime]
else:
    _Base = types.TypeDecorator


class UTCDateTime(_Base):
    """ Stores timezone aware datetimes as naive UTC values.

    Postgres applies the session timezone to ``timestamptz`` values, which
    is why the columns are naive and always hold UTC. Values are converted
    to UTC on the way in and come back as UTC aware datetimes. Naive values
    are refused, as there is no telling which timezone they were meant in.

    """

    impl = types.DateTime
    cache_ok = True

    def process_bind_param(  # type:ignore[override]
        self,
        value: datetime | None,
        dialect: Dialect
    ) -> datetime | None:

        if value is None:
            return None

        if value.tzinfo is None:
            raise ValueError(f'Refusing to store naive datetime {value}')

        return sedate.to_timezone(value, 'UTC').replace(tzinfo=None)

    def process_result_value(
        self,
        value: datetime | None,
        dialect: Dialect
    ) -> datetime | None:

        if value is None:
            return None

        return sedate.replace_timezone(value, 'UTC')


class ORMBase(DeclarativeBase):

    registry = registry(type_annotation_map={
        datetime: UTCDateTime(timezone=False),
    })

from __future__ import annotations

from sqlalchemy import CheckConstraint
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import Mapped

from slotkeeper.db.models.base import ORMBase
from slotkeeper.db.models.timestamp import TimestampMixin


class ResourceMixin(TimestampMixin):
    """ Something that can be booked: a device lent out for whole days or a
    room booked by the slot.

    The quantity is the number of identical units behind the resource. A
    permanently reserved resource is never offered to the public.

    """

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True
    )

    name: Mapped[str] = mapped_column(unique=True)

    description: Mapped[str | None]

    quantity: Mapped[int] = mapped_column(default=1)

    sort_order: Mapped[int] = mapped_column(default=0)

    is_active: Mapped[bool] = mapped_column(default=True)

    permanent_reserved: Mapped[bool] = mapped_column(default=False)

    @property
    def is_public(self) -> bool:
        return self.is_active and not self.permanent_reserved

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__} {self.id} {self.name!r}>'


class Device(ResourceMixin, ORMBase):

    __tablename__ = 'devices'

    __table_args__ = (
        CheckConstraint('quantity >= 1', name='devices_quantity_check'),
    )


class Room(ResourceMixin, ORMBase):

    __tablename__ = 'rooms'

    __table_args__ = (
        CheckConstraint('quantity >= 1', name='rooms_quantity_check'),
    )

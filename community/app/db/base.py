from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase


class Base(AsyncAttrs, DeclarativeBase):
    """Declarative base for all ORM models.

    AsyncAttrs allows awaiting lazy attributes (``await obj.awaitable_attrs.x``)
    from async sessions.
    """
    pass

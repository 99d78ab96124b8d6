from __future__ import annotations

import functools
import logging

from psycopg2.extensions import TransactionRollbackError
from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import scoped_session, sessionmaker

from slotkeeper.context.core import StoppableService


from typing import Any
from typing import TypeVar
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from typing_extensions import Concatenate, ParamSpec

    from slotkeeper.context.core import ContextServicesMixin

    _P = ParamSpec('_P')
    _S = TypeVar('_S', bound=ContextServicesMixin)

_T = TypeVar('_T')


log = logging.getLogger('slotkeeper')


SERIALIZABLE = 'SERIALIZABLE'


class SessionProvider(StoppableService):
    """Global session utility. It provides a SERIALIZABLE session to
    slotkeeper. If you want to override this provider, be sure to set the
    isolation_level to SERIALIZABLE as well.

    The capacity checks of the booking stores rely on it. Under a weaker
    isolation level two concurrent bookings could both see a free unit.

    """

    def __init__(
        self,
        dsn: str,
        engine_config: dict[str, Any] | None = None,
        session_config: dict[str, Any] | None = None
    ):
        self.assert_valid_postgres_version(dsn)
        self.dsn = dsn

        self.engine = create_engine(
            dsn, poolclass=QueuePool, pool_size=5, max_overflow=5,
            isolation_level=SERIALIZABLE,
            **(engine_config or {})
        )

        self.session = scoped_session(sessionmaker(
            bind=self.engine, **(session_config or {})
        ))

    def stop_service(self) -> None:
        """ Called by the context when the session provider is being
        discarded (only in testing).

        This makes sure that replacing the session provider on the context
        doesn't leave behind any idle connections.

        """

        self.session.remove()
        self.engine.dispose()

    def get_postgres_version(self, dsn: str) -> tuple[str, int]:
        """ Returns the postgres version as a tuple (string, integer).

        Uses it's own connection to be independent from any session.

        """
        assert 'postgres' in dsn, 'Not a postgres database'

        query = text("""
            SELECT current_setting('server_version'),
                   current_setting('server_version_num')
        """)

        engine = create_engine(dsn)

        try:
            with engine.connect() as connection:
                result = connection.execute(query).first()
            assert result is not None
            version, number = result
            return version, int(number)
        finally:
            engine.dispose()

    def assert_valid_postgres_version(self, dsn: str) -> str:
        v, n = self.get_postgres_version(dsn)

        if n < 90100:
            raise RuntimeError(f'PostgreSQL 9.1+ is required, got {v}')

        return dsn


def is_serialization_failure(error: BaseException) -> bool:
    """ True if the error is PostgreSQL aborting a transaction because it
    could not be serialized with a concurrent one (or a deadlock).

    """
    return isinstance(error, DBAPIError) and isinstance(
        error.orig, TransactionRollbackError
    )


def serialized(
    fn: Callable[Concatenate[_S, _P], _T]
) -> Callable[Concatenate[_S, _P], _T]:
    """ Runs the decorated method as a single transaction.

    The transaction is committed when the method returns and rolled back
    when it raises. If PostgreSQL aborts the transaction with a
    serialization failure, the whole method is run again, up to
    :ref:`settings.serialization_retries` times. As each run reads the
    current state anew, the loser of a race ends up with the error the
    winner's changes cause (e.g. NotAvailable), not with a duplicate.

    Calls nested inside a serialized method join the outer transaction.

    """

    @functools.wraps(fn)
    def wrapper(self: _S, *args: _P.args, **kwargs: _P.kwargs) -> _T:
        session = self.session

        if session.info.get('serialized'):
            return fn(self, *args, **kwargs)

        retries = self.context.get_setting('serialization_retries') or 0
        attempt = 0

        while True:
            session.info['serialized'] = True

            try:
                result = fn(self, *args, **kwargs)
                session.commit()
                return result
            except Exception as e:
                session.rollback()

                if not is_serialization_failure(e) or attempt >= retries:
                    raise

                attempt += 1
                log.info(
                    'Serialization failure in %s, retry %i of %i',
                    fn.__name__, attempt, retries
                )
            finally:
                session.info.pop('serialized', None)

    return wrapper

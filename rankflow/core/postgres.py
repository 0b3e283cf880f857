from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from rankflow.core.errors import TransientStorageError


logger = logging.getLogger(__name__)


class PostgresConnection:
    """Lazily opened psycopg2 connection shared by the PostgreSQL repositories.

    Every `transaction()` block commits on success and rolls back on error. Driver
    connectivity errors surface as TransientStorageError so callers can retry.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._conn = None

    def _get_conn(self):
        if self._conn is None or self._conn.closed:
            import psycopg2  # type: ignore

            try:
                self._conn = psycopg2.connect(self._dsn)
            except psycopg2.OperationalError as e:
                raise TransientStorageError(f"postgres connect failed: {e}") from e
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator:
        import psycopg2  # type: ignore
        import psycopg2.extensions  # type: ignore

        conn = self._get_conn()
        try:
            with conn.cursor() as cur:
                yield cur
            conn.commit()
        except psycopg2.extensions.TransactionRollbackError as e:
            # Deadlock / serialization failure: the connection is still usable.
            conn.rollback()
            raise TransientStorageError(f"transaction rolled back: {e}") from e
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._discard(conn)
            raise TransientStorageError(f"postgres unavailable: {e}") from e
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise

    def _discard(self, conn) -> None:
        try:
            conn.close()
        except Exception as e:  # pragma: no cover
            logger.debug("postgres_close_failed", extra={"error": str(e)})
        self._conn = None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

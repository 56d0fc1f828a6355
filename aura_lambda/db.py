"""
db.py — PostgreSQL access
==========================
A lazily created SimpleConnectionPool plus a small RecordStore facade that
the route handlers share. Filters are equality matches; a "__gte" or "__lte"
suffix on a filter key selects a range comparison. Dict and list values are
wrapped in psycopg2's Json adapter.
"""

import psycopg2
from psycopg2 import pool, sql
from psycopg2.extras import Json, RealDictCursor

from config import DB_HOST, DB_NAME, DB_PASSWORD, DB_PORT, DB_USER, log_ctx, logger, resolve_secret
from errors import PersistenceError

db_pool = None

_OPERATORS = {"gte": ">=", "lte": "<="}


def init_db_pool():
    global db_pool
    if db_pool is not None:
        return
    logger.info("Initializing DB pool", extra=log_ctx(module_name="db"))
    db_pool = pool.SimpleConnectionPool(
        minconn=1, maxconn=8,
        host=DB_HOST, database=DB_NAME, user=DB_USER,
        password=resolve_secret(DB_PASSWORD), port=DB_PORT, connect_timeout=8,
    )


def get_db_connection():
    if db_pool is None:
        init_db_pool()
    return db_pool.getconn()


def release_db_connection(conn):
    if db_pool and conn:
        db_pool.putconn(conn)


def _adapt(value):
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


def _where(filters):
    clauses, params = [], []
    for key, value in (filters or {}).items():
        column, _, op = key.partition("__")
        operator = _OPERATORS.get(op, "=")
        clauses.append(sql.SQL("{} {} %s").format(sql.Identifier(column), sql.SQL(operator)))
        params.append(_adapt(value))
    if not clauses:
        return sql.SQL(""), params
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params


class RecordStore:
    """Table-oriented reads and writes over the shared connection pool."""

    def _execute(self, query, params, fetch):
        try:
            conn = get_db_connection()
        except psycopg2.Error as exc:
            raise PersistenceError("Database unavailable", details=str(exc)) from exc
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                if fetch == "all":
                    result = [dict(r) for r in cur.fetchall()]
                elif fetch == "one":
                    row = cur.fetchone()
                    result = dict(row) if row else {}
                else:
                    result = cur.rowcount
            conn.commit()
            return result
        except psycopg2.Error as exc:
            conn.rollback()
            logger.error(
                f"Database operation failed: {exc}",
                extra=log_ctx(module_name="db"),
                exc_info=True,
            )
            raise PersistenceError("Database operation failed", details=str(exc)) from exc
        finally:
            release_db_connection(conn)

    def get(self, table, filters=None, limit=None):
        where, params = _where(filters)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + where
        if limit:
            query += sql.SQL(" LIMIT %s")
            params.append(int(limit))
        return self._execute(query, params, "all")

    def insert(self, table, record):
        columns = list(record)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        return self._execute(query, [_adapt(record[c]) for c in columns], "one")

    def update(self, table, values, filters):
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values
        )
        where, where_params = _where(filters)
        query = sql.SQL("UPDATE {} SET ").format(sql.Identifier(table)) + assignments + where
        return self._execute(query, [_adapt(v) for v in values.values()] + where_params, "count")


def log_analytics_event(store, user_id, event_name, properties):
    """Best-effort analytics row; failures are logged, never raised."""
    try:
        store.insert("analytics_events", {
            "user_id": user_id,
            "event_name": event_name,
            "properties": properties,
        })
    except Exception as exc:
        logger.warning(
            f"Analytics event write skipped: {exc}",
            extra=log_ctx(module_name="db", user_id=user_id or "-", event_type=event_name),
        )

# -*- coding: utf-8 -*-
"""Declarative base and dialect helpers shared by all GateBot models"""

from sqlalchemy import MetaData
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import declarative_base

BASE = declarative_base(metadata=MetaData())


def dialect_insert(session, table):
    """Return an ``INSERT`` construct that supports upserts on the session's dialect.

    SQLite and PostgreSQL expose ``on_conflict_do_update``; MySQL/MariaDB expose
    ``on_duplicate_key_update``. Callers branch on :func:`dialect_name`.
    """
    name = dialect_name(session)
    if name == "postgresql":
        return postgresql.insert(table)
    if name in ("mysql", "mariadb"):
        return mysql.insert(table)
    return sqlite.insert(table)


def dialect_name(session) -> str:
    return session.get_bind().dialect.name

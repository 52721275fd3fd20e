"""
Shared fixtures: an in-memory stand-in for pg_roles behind a fake pool.

The fake understands exactly the statement shapes the provider emits, keeps
uncommitted changes per connection and mimics the pool's rollback of
connections returned mid-transaction.
"""

import copy
import re

import psycopg2
import psycopg2.errors
import psycopg2.pool
import pytest
from psycopg2 import sql

from .context import ConnectionContext
from .db_version import EngineVersion

PG_VERSION = "PostgreSQL 15.6 (Debian 15.6-1.pgdg120+2) on aarch64-unknown-linux-gnu, compiled by gcc (Debian 12.2.0-14) 12.2.0, 64-bit"


def _quote_param(value):
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    return str(value)


def render_sql(statement, params=None) -> str:
    """Render a statement the way psycopg2 would, without a live connection"""
    if isinstance(statement, sql.Composed):
        text = "".join(render_sql(part) for part in statement.seq)
    elif isinstance(statement, sql.Identifier):
        text = ".".join('"' + s.replace('"', '""') + '"' for s in statement.strings)
    elif isinstance(statement, sql.Literal):
        text = _quote_param(statement.wrapped)
    elif isinstance(statement, sql.SQL):
        text = statement.string
    else:
        text = statement
    if params:
        text = text % tuple(_quote_param(p) for p in params)
    return text


_IDENT = r'"((?:[^"]|"")*)"'
_LITERAL = r"'((?:[^']|'')*)'"
_ROLE_COLUMNS = "rolbypassrls, rolcanlogin, rolconnlimit, rolcreaterole, rolinherit, rolname, rolreplication, rolsuper"

_OPTION_FLAGS = {
    "BYPASSRLS": "rolbypassrls",
    "LOGIN": "rolcanlogin",
    "CREATEROLE": "rolcreaterole",
    "INHERIT": "rolinherit",
    "REPLICATION": "rolreplication",
    "SUPERUSER": "rolsuper",
}


def _parse_options(options: str) -> dict:
    attrs = {}
    tokens = options.split()
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token == "CONNECTION":
            attrs["rolconnlimit"] = int(tokens[i + 2])
            i += 3
            continue
        if token in _OPTION_FLAGS:
            attrs[_OPTION_FLAGS[token]] = True
        elif token.startswith("NO") and token[2:] in _OPTION_FLAGS:
            attrs[_OPTION_FLAGS[token[2:]]] = False
        else:
            raise psycopg2.errors.SyntaxError(f'syntax error at or near "{token}"')
        i += 1
    return attrs


def _new_role(name: str, oid: int) -> dict:
    return {
        "oid": oid,
        "rolname": name,
        "rolbypassrls": False,
        "rolcanlogin": False,
        "rolconnlimit": -1,
        "rolcreaterole": False,
        "rolinherit": True,
        "rolreplication": False,
        "rolsuper": False,
    }


class FakeDatabase:
    """Committed contents of pg_roles plus failure switches for tests"""

    def __init__(self, version: str = PG_VERSION):
        self.version = version
        self.roles = {}
        self.next_oid = 16384
        self.executed = []
        self.fail_statements = {}
        self.fail_commit = None
        self.fail_rollback = None
        self.commits = 0
        self.rollbacks = 0

    def add_role(self, name: str, **attrs) -> dict:
        role = _new_role(name, self.next_oid)
        role.update(attrs)
        self.next_oid += 1
        self.roles[name] = role
        return role

    def role_by_oid(self, oid: int):
        return next((r for r in self.roles.values() if r["oid"] == oid), None)


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn
        self.description = None
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def mogrify(self, statement, params=None) -> bytes:
        return render_sql(statement, params).encode("utf-8")

    def execute(self, statement, params=None):
        text = render_sql(statement, params)
        self.conn.db.executed.append(text)
        for fragment, error in self.conn.db.fail_statements.items():
            if fragment in text:
                raise error
        self._rows = self.conn.run(text)
        self.description = None if self._rows is None else [("column",)]

    def fetchall(self):
        return list(self._rows or [])

    def fetchone(self):
        return self._rows[0] if self._rows else None


class FakeConnection:
    """One pooled connection with its own uncommitted view of pg_roles"""

    def __init__(self, db: FakeDatabase):
        self.db = db
        self._working = None

    @property
    def in_transaction(self) -> bool:
        return self._working is not None

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self):
        if self.db.fail_commit is not None:
            self._working = None
            raise self.db.fail_commit
        if self._working is not None:
            self.db.roles = self._working
            self.db.next_oid = max([self.db.next_oid] + [r["oid"] + 1 for r in self._working.values()])
        self._working = None
        self.db.commits += 1

    def rollback(self):
        self._working = None
        self.db.rollbacks += 1
        if self.db.fail_rollback is not None:
            raise self.db.fail_rollback

    def _roles(self) -> dict:
        if self._working is None:
            self._working = copy.deepcopy(self.db.roles)
        return self._working

    def run(self, text: str):
        if text == "SELECT VERSION();":
            return [(self.db.version,)]

        match = re.fullmatch(rf"CREATE ROLE {_IDENT} WITH (.*);", text)
        if match:
            name = match.group(1).replace('""', '"')
            roles = self._roles()
            if name in roles:
                raise psycopg2.errors.DuplicateObject(f'role "{name}" already exists')
            oid = max([self.db.next_oid] + [r["oid"] + 1 for r in roles.values()])
            role = _new_role(name, oid)
            role.update(_parse_options(match.group(2)))
            roles[name] = role
            return None

        match = re.fullmatch(rf"ALTER ROLE {_IDENT} WITH (.*);", text)
        if match:
            name = match.group(1).replace('""', '"')
            roles = self._roles()
            if name not in roles:
                raise psycopg2.errors.UndefinedObject(f'role "{name}" does not exist')
            roles[name].update(_parse_options(match.group(2)))
            return None

        match = re.fullmatch(rf"DROP ROLE {_IDENT};", text)
        if match:
            name = match.group(1).replace('""', '"')
            roles = self._roles()
            if name not in roles:
                raise psycopg2.errors.UndefinedObject(f'role "{name}" does not exist')
            del roles[name]
            return None

        match = re.fullmatch(rf"SELECT oid FROM pg_roles WHERE rolname = {_LITERAL}", text)
        if match:
            role = self._roles().get(match.group(1).replace("''", "'"))
            return [(role["oid"],)] if role else []

        match = re.fullmatch(rf"SELECT {_ROLE_COLUMNS} FROM pg_roles WHERE oid = (\d+);", text)
        if match:
            oid = int(match.group(1))
            role = next((r for r in self._roles().values() if r["oid"] == oid), None)
            return [self._row(role)] if role else []

        match = re.fullmatch(rf"SELECT {_ROLE_COLUMNS}, oid FROM pg_roles WHERE rolname = {_LITERAL};", text)
        if match:
            role = self._roles().get(match.group(1).replace("''", "'"))
            return [self._row(role) + (role["oid"],)] if role else []

        raise psycopg2.errors.SyntaxError(f"unsupported statement in fake database: {text}")

    @staticmethod
    def _row(role: dict) -> tuple:
        return tuple(role[column.strip()] for column in _ROLE_COLUMNS.split(","))


class FakePool:
    """Mimics ThreadedConnectionPool: rolls back connections returned mid-transaction"""

    def __init__(self, db: FakeDatabase, *args, **kwargs):
        self.db = db
        self.args = args
        self.kwargs = kwargs
        self.closed = False
        self.checked_out = []
        self.getconn_error = None

    def getconn(self):
        if self.closed:
            raise psycopg2.pool.PoolError("connection pool is closed")
        if self.getconn_error is not None:
            raise self.getconn_error
        conn = FakeConnection(self.db)
        self.checked_out.append(conn)
        return conn

    def putconn(self, conn):
        self.checked_out.remove(conn)
        if conn.in_transaction:
            conn._working = None

    def closeall(self):
        self.closed = True


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def fake_pool(database):
    return FakePool(database)


@pytest.fixture
def context(fake_pool):
    return ConnectionContext(fake_pool, EngineVersion("PostgreSQL", "15.6"))

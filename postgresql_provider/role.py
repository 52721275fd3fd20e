"""
PostgreSQL role resource

Translates a desired role description into transactional DDL and reads the
live attributes back from pg_roles. Every change runs inside one
ReconciliationTransaction; reads check a single connection out of the pool.
"""

import logging
from typing import Any, Dict, Mapping, Optional

import psycopg2
from psycopg2 import sql
from pydantic import BaseModel, ConfigDict, Field

from .context import ConnectionContext, statement_text
from .errors import (
    ImportTokenError,
    OidLookupError,
    ReadError,
    RoleCreationError,
    RoleDeletionError,
    RoleUpdateError,
)
from .resource import ResourceKey, decode_attributes

logger = logging.getLogger("postgresql-provider.role")

ROLE_TYPE_NAME = "postgresql_role"

# ============================================================================
# DATA MODELS
# ============================================================================

INT32_MAX = 2 ** 31 - 1


class RoleDesiredState(BaseModel):
    """Target attributes of a role as supplied by the orchestrator"""

    model_config = ConfigDict(frozen=True, extra="forbid", strict=True)

    name: str = Field(
        min_length=1,
        description="The name of the Postgresql role.",
        # Renaming affects objects that depend on the role, so it is never done in place.
        json_schema_extra={"requires_replace": True},
    )
    bypass_row_level_security: bool = Field(
        default=False,
        description="Determines whether a role bypasses every row-level security (RLS) policy.",
    )
    can_login: bool = Field(
        default=False,
        description="Determines whether a role is allowed to log in.",
    )
    connection_limit: int = Field(
        default=-1,
        ge=-1,
        le=INT32_MAX,
        description="Specifies how many concurrent connections the role can make. -1 (the default) means no limit.",
    )
    create_role: bool = Field(
        default=False,
        description="Determines whether the role will be permitted to create, alter, drop, comment on, "
        "and change the security label for other roles.",
    )
    inherit: bool = Field(
        default=True,
        description="Determines whether the role inherits privileges from other roles that it's a member of.",
    )
    replication: bool = Field(
        default=False,
        description="Determines whether the role will have permissions to initiate replication.",
    )
    superuser: bool = Field(
        default=False,
        description="Determines whether the role is a superuser, which can override all access "
        "restrictions within the database.",
    )


class RoleActualState(RoleDesiredState):
    """Role attributes as found in the database, including the server-assigned oid"""

    oid: int = Field(description="The object ID of the Postgresql role.", json_schema_extra={"computed": True})

    @classmethod
    def from_desired(cls, desired: RoleDesiredState, oid: int) -> "RoleActualState":
        return cls(oid=oid, **desired.model_dump())

    def to_desired(self) -> RoleDesiredState:
        return RoleDesiredState(**self.model_dump(exclude={"oid"}))

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


# ============================================================================
# OPTION COMPILER
# ============================================================================

def _flag(enabled: bool, keyword: str) -> str:
    return keyword if enabled else f"NO{keyword}"


def compile_role_options(desired: RoleDesiredState) -> str:
    """
    Compile the option clause for CREATE ROLE / ALTER ROLE

    Every option is always emitted in the same order so the same desired
    state produces byte-identical SQL. The role name is not part of the
    clause.
    """
    options = [
        _flag(desired.bypass_row_level_security, "BYPASSRLS"),
        _flag(desired.can_login, "LOGIN"),
        f"CONNECTION LIMIT {int(desired.connection_limit)}",
        _flag(desired.create_role, "CREATEROLE"),
        _flag(desired.inherit, "INHERIT"),
        _flag(desired.replication, "REPLICATION"),
        _flag(desired.superuser, "SUPERUSER"),
    ]
    return " ".join(options)


def create_role_statement(desired: RoleDesiredState) -> sql.Composed:
    return sql.SQL("CREATE ROLE {} WITH {};").format(
        sql.Identifier(desired.name),
        sql.SQL(compile_role_options(desired)),
    )


def alter_role_statement(desired: RoleDesiredState) -> sql.Composed:
    return sql.SQL("ALTER ROLE {} WITH {};").format(
        sql.Identifier(desired.name),
        sql.SQL(compile_role_options(desired)),
    )


def drop_role_statement(name: str) -> sql.Composed:
    return sql.SQL("DROP ROLE {};").format(sql.Identifier(name))


SELECT_OID_SQL = "SELECT oid FROM pg_roles WHERE rolname = %s"

READ_ROLE_SQL = (
    "SELECT rolbypassrls, rolcanlogin, rolconnlimit, rolcreaterole, rolinherit, "
    "rolname, rolreplication, rolsuper FROM pg_roles WHERE oid = %s;"
)

READ_ROLE_BY_NAME_SQL = (
    "SELECT rolbypassrls, rolcanlogin, rolconnlimit, rolcreaterole, rolinherit, "
    "rolname, rolreplication, rolsuper, oid FROM pg_roles WHERE rolname = %s;"
)


# ============================================================================
# RECONCILER
# ============================================================================

class RoleReconciler:
    """
    Create/read/update/delete/import for PostgreSQL login roles

    The reconciler holds no state of its own besides the injected
    ConnectionContext, so one instance may serve concurrent calls for
    different roles.
    """

    type_name = ROLE_TYPE_NAME
    schema = RoleDesiredState

    def __init__(self, context: ConnectionContext):
        self.context = context

    def create(self, desired: RoleDesiredState) -> RoleActualState:
        """
        Create the role and look up its oid in the same transaction

        Args:
            desired: Target role attributes

        Returns:
            RoleActualState built from the desired attributes plus the new oid

        Raises:
            RoleCreationError: CREATE ROLE failed (duplicate name, permissions, ...)
            OidLookupError: the role could not be found right after creation
            CommitError: commit failed; the role may or may not exist
        """
        with self.context.transaction() as txn:
            txn.execute(create_role_statement(desired), error_cls=RoleCreationError)

            rows = txn.execute(SELECT_OID_SQL, (desired.name,), error_cls=OidLookupError)
            if not rows:
                raise OidLookupError(
                    txn.render(SELECT_OID_SQL, (desired.name,)),
                    LookupError(f"no row in pg_roles for role '{desired.name}'"),
                )
            oid = int(rows[0][0])

            txn.commit()

        logger.info(f"Successfully created Postgresql Role: {desired.name} (oid {oid})")
        return RoleActualState.from_desired(desired, oid)

    def read(self, oid: Optional[int], name: Optional[str] = None) -> Optional[RoleActualState]:
        """
        Read the role's current attributes

        Looks the role up by oid; when no oid is known yet (state created by
        an import) the name is used instead.

        Args:
            oid: Role oid from tracked state
            name: Role name from tracked state or import

        Returns:
            RoleActualState, or None if the role no longer exists

        Raises:
            ReadError: the query failed
        """
        if oid is None and not name:
            raise ValueError("read() needs an oid or a role name")

        if oid is not None:
            query, params = READ_ROLE_SQL, (int(oid),)
        else:
            query, params = READ_ROLE_BY_NAME_SQL, (name,)

        with self.context.connection() as conn:
            with conn.cursor() as cur:
                text = statement_text(cur, query, params)
                try:
                    cur.execute(query, params)
                    row = cur.fetchone()
                except psycopg2.Error as e:
                    logger.error(f"SQL query to read role encountered an unexpected error, query=`{text}`: {e}")
                    raise ReadError(text, e) from e

        if row is None:
            logger.warning(f"The Postgres role couldn't be found. role: {name} (oid: {oid})")
            return None

        if oid is None:
            oid = row[8]

        return RoleActualState(
            oid=int(oid),
            bypass_row_level_security=bool(row[0]),
            can_login=bool(row[1]),
            connection_limit=int(row[2]),
            create_role=bool(row[3]),
            inherit=bool(row[4]),
            name=row[5],
            replication=bool(row[6]),
            superuser=bool(row[7]),
        )

    def update(self, desired: RoleDesiredState, oid: int) -> RoleActualState:
        """
        Alter the role in place

        The name is assumed stable: a rename is a replace, handled by the caller.
        """
        with self.context.transaction() as txn:
            txn.execute(alter_role_statement(desired), error_cls=RoleUpdateError)
            txn.commit()

        logger.info(f"Successfully altered Postgresql Role: {desired.name}")
        return RoleActualState.from_desired(desired, oid)

    def delete(self, name: str) -> None:
        """Drop the role; a missing role is reported like any other failure"""
        with self.context.transaction() as txn:
            txn.execute(drop_role_statement(name), error_cls=RoleDeletionError)
            txn.commit()

        logger.info(f"Successfully dropped Postgresql Role: {name}")

    def import_state(self, token: str) -> ResourceKey:
        """Use the import token as the role name; no database access"""
        if not isinstance(token, str) or not token.strip():
            raise ImportTokenError(token)
        return ResourceKey(attribute="name", value=token)

    def decode_desired(self, data: Mapping[str, Any]) -> RoleDesiredState:
        return decode_attributes(RoleDesiredState, data)

    def decode_state(self, data: Mapping[str, Any]) -> RoleActualState:
        return decode_attributes(RoleActualState, data)

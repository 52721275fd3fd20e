"""
Declarative management of PostgreSQL roles.
"""

from .config import ProviderSettings
from .context import ConnectionContext, ReconciliationTransaction, configure
from .db_version import EngineVersion, parse_db_version, parse_postgres_version
from .registry import Provider, ResourceRegistry
from .role import RoleActualState, RoleDesiredState, RoleReconciler, compile_role_options

__version__ = "0.1.0"

__all__ = [
    "ConnectionContext",
    "EngineVersion",
    "Provider",
    "ProviderSettings",
    "ReconciliationTransaction",
    "ResourceRegistry",
    "RoleActualState",
    "RoleDesiredState",
    "RoleReconciler",
    "compile_role_options",
    "configure",
    "parse_db_version",
    "parse_postgres_version",
]

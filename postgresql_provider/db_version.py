"""
Database dialect and version detection from `SELECT VERSION();` output.
"""

import re
from dataclasses import dataclass
from typing import List, Pattern

from .errors import UnrecognizedVersionError

POSTGRESQL = "PostgreSQL"
COCKROACHDB = "CockroachDB CCL"

# Order matters: more specific editions go before the upstream pattern they resemble.
DB_VERSION_PATTERNS: List[Pattern] = [
    re.compile(r"(CockroachDB CCL) v([\d.]+) "),
    re.compile(r"(PostgreSQL) ([\d.]+) "),
]

POSTGRES_VERSION_PATTERNS: List[Pattern] = [
    re.compile(r"(PostgreSQL) ([\d.]+) "),
]


@dataclass(frozen=True)
class EngineVersion:
    """Normalized (engine, version) pair detected once per connection context"""
    engine: str
    version: str

    def __str__(self) -> str:
        return f"{self.engine} {self.version}"


def parse_db_version(raw: str) -> EngineVersion:
    """
    Parse the raw version string into an EngineVersion

    Args:
        raw: Text returned by `SELECT VERSION();`

    Returns:
        EngineVersion for the first matching dialect pattern

    Raises:
        UnrecognizedVersionError: no pattern matched
    """
    for pattern in DB_VERSION_PATTERNS:
        match = pattern.search(raw or "")
        if match:
            return EngineVersion(engine=match.group(1), version=match.group(2))

    raise UnrecognizedVersionError(raw)


def parse_postgres_version(raw: str) -> str:
    """Return only the upstream PostgreSQL version number"""
    for pattern in POSTGRES_VERSION_PATTERNS:
        match = pattern.search(raw or "")
        if match:
            return match.group(2)

    raise UnrecognizedVersionError(raw)

"""
Error taxonomy for the PostgreSQL provider.

Every failure that leaves the reconciliation core is a ProviderError. The
controller turns them into Diagnostic records for the orchestrator instead of
retrying: retry policy, if any, belongs to whoever drives the provider.
"""

from dataclasses import dataclass
from typing import Optional, Sequence


ERROR = "error"
WARNING = "warning"


@dataclass(frozen=True)
class Diagnostic:
    """Structured diagnostic handed back to the orchestrator"""
    severity: str
    summary: str
    detail: str = ""
    address: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "severity": self.severity,
            "summary": self.summary,
            "detail": self.detail,
            "address": self.address,
        }


class ProviderError(Exception):
    """Base class for every error raised by the provider"""

    summary = "Provider error"
    severity = ERROR

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail
        self.rollback_error: Optional["RollbackError"] = None

    def __str__(self) -> str:
        message = self.detail
        if self.rollback_error is not None:
            message += f" (additionally, rollback failed: {self.rollback_error.detail})"
        return message

    def to_diagnostic(self, address: Optional[str] = None) -> Diagnostic:
        return Diagnostic(self.severity, self.summary, str(self), address)


class ConfigError(ProviderError):
    summary = "Invalid provider configuration"

    @classmethod
    def from_validation(cls, error, what: str = "provider settings") -> "ConfigError":
        return cls(f"Invalid {what}: {describe_validation_error(error)}")


class ManifestError(ProviderError):
    summary = "Invalid desired-state manifest"

    @classmethod
    def from_validation(cls, error, what: str = "attributes") -> "ManifestError":
        return cls(f"Invalid {what}: {describe_validation_error(error)}")


def describe_validation_error(error) -> str:
    """Flatten a pydantic ValidationError into one line of `field`: message pairs"""
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "value"
        parts.append(f"`{location}`: {item['msg']}")
    return "; ".join(parts)


class ParseError(ProviderError):
    summary = "Unable to parse results of `SELECT VERSION();` from this database"


class UnrecognizedVersionError(ParseError):
    """Raised when no known dialect pattern matches the version string"""

    def __init__(self, raw: str):
        super().__init__(
            f"output of `SELECT VERSION();`: '{raw}', didn't match expected patterns"
        )
        self.raw = raw


class DatabaseConnectionError(ProviderError):
    summary = "DB connection pool error"

    def __init__(self, detail: str, cause: Optional[BaseException] = None):
        super().__init__(detail)
        self.cause = cause


class StatementError(ProviderError):
    """A statement failed; carries the failing SQL text verbatim"""

    summary = "DB statement error"

    def __init__(self, statement: str, cause: BaseException):
        super().__init__(f"Error executing query '{statement}', got error: {cause}")
        self.statement = statement
        self.cause = cause


class RoleCreationError(StatementError):
    summary = "DB role creation error"


class RoleUpdateError(StatementError):
    summary = "DB role update error"


class RoleDeletionError(StatementError):
    summary = "DB role deletion error"


class OidLookupError(StatementError):
    summary = "Failed to retrieve role OID"


class ReadError(StatementError):
    summary = "DB query error"


class RollbackError(ProviderError):
    summary = "Transaction rollback error"

    def __init__(self, cause: BaseException):
        super().__init__(f"Unable to rollback transaction, got error: {cause}")
        self.cause = cause


class CommitError(ProviderError):
    """
    Commit failed after the statements succeeded.

    The outcome is ambiguous: the role may exist in the database even though
    the call failed. The next read reconciles it.
    """

    summary = "DB transaction error"

    def __init__(self, cause: BaseException):
        super().__init__(
            f"Error committing DB transaction, got error: {cause}. "
            "The change may or may not have been applied; verify the role manually "
            "or refresh state before retrying."
        )
        self.cause = cause


class RoleNotFoundError(ProviderError):
    """Soft signal: the role was removed outside of the provider"""

    summary = "No results returned"
    severity = WARNING

    def __init__(self, name: Optional[str], oid: Optional[int] = None):
        super().__init__(f"The Postgres role couldn't be found. role: {name} (oid: {oid})")
        self.name = name
        self.oid = oid


class UnknownResourceTypeError(ProviderError):
    summary = "Unknown resource type"

    def __init__(self, type_name: str, known: Sequence[str] = ()):
        detail = f"Resource type '{type_name}' is not registered with this provider"
        if known:
            detail += f" (supported: {', '.join(known)})"
        super().__init__(detail)
        self.type_name = type_name


class ImportTokenError(ProviderError):
    summary = "Invalid import identifier"

    def __init__(self, token):
        super().__init__(f"Expected the role name as import identifier, got: {token!r}")
        self.token = token

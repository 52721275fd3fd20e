"""
Declarative controller for PostgreSQL roles

Reads a YAML manifest of desired resources, refreshes the tracked state
against the database, plans the changes needed to converge and applies them
through the registered resources.

Features:
- Create, update, replace and delete of managed roles
- Drift detection on every refresh
- Import of existing roles into tracked state
- State persistence for change tracking
- Structured logging with severity levels
- Dry-run mode support
- One transaction per resource change
"""

import argparse
import logging
import os
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml

from .config import Config, ProviderSettings
from .errors import ERROR, Diagnostic, ManifestError, ProviderError, RoleNotFoundError
from .registry import Provider
from .resource import changed_attributes, requires_replace
from .state import StateManager, TrackedResource

# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"

LOG_FORMAT = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'

logger = logging.getLogger("postgresql-provider")

CREATE = "create"
UPDATE = "update"
REPLACE = "replace"
DELETE = "delete"
NOOP = "noop"


def configure_logging(level: str = "INFO"):
    """Configure structured logging on stdout"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# ============================================================================
# DATA MODELS
# ============================================================================

@dataclass
class DesiredResource:
    """One resource block from the manifest, attributes not yet validated"""
    type: str
    attributes: Dict[str, Any]


@dataclass
class Manifest:
    """Parsed desired-state document"""
    resources: Dict[str, DesiredResource] = field(default_factory=dict)
    provider: Optional[ProviderSettings] = None


@dataclass
class PlannedChange:
    """A single step of a plan"""
    action: str
    address: str
    type: str
    desired: Any = None
    prior: Optional[TrackedResource] = None
    changed: List[str] = field(default_factory=list)

    def describe(self) -> str:
        if self.action == UPDATE or self.action == REPLACE:
            return f"{self.action} {self.address} ({', '.join(self.changed)})"
        return f"{self.action} {self.address}"


@dataclass
class ReconciliationStats:
    """Statistics for a reconciliation cycle"""
    roles_created: int = 0
    roles_updated: int = 0
    roles_replaced: int = 0
    roles_deleted: int = 0
    drift_detected: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def record(self, error: ProviderError, address: Optional[str] = None):
        diagnostic = error.to_diagnostic(address)
        self.diagnostics.append(diagnostic)
        if diagnostic.severity == ERROR:
            self.errors += 1

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds(),
        }


# ============================================================================
# MANIFEST
# ============================================================================

def parse_manifest(yaml_content: str, provider: Provider) -> Manifest:
    """
    Parse a YAML manifest into desired resources

    Args:
        yaml_content: YAML document
        provider: Provider whose registry knows the resource types

    Returns:
        Manifest with resources keyed by "<type>.<name>" address

    Raises:
        ManifestError: malformed document or unknown resource type
        ConfigError: invalid provider block
    """
    try:
        parsed = yaml.safe_load(yaml_content) if yaml_content else None
    except yaml.YAMLError as e:
        raise ManifestError(f"Error parsing manifest: {e}") from e

    if parsed is None:
        logger.warning("Empty manifest, no resources to manage")
        return Manifest()
    if not isinstance(parsed, dict):
        raise ManifestError("Manifest must be a mapping with a `resources` key")

    provider_block = parsed.get("provider")
    if provider_block is not None and not isinstance(provider_block, dict):
        raise ManifestError("`provider` must be a mapping of connection settings")
    resources = parsed.get("resources") or {}
    if not isinstance(resources, dict):
        raise ManifestError("`resources` must map resource types to named resource blocks")

    manifest = Manifest()
    if provider_block:
        manifest.provider = ProviderSettings.from_mapping(provider_block)

    for type_name, blocks in resources.items():
        if type_name not in provider.registry:
            raise ManifestError(
                f"Resource type '{type_name}' is not supported by this provider "
                f"(supported: {', '.join(provider.registry.list_types())})"
            )
        if not isinstance(blocks, dict):
            raise ManifestError(f"`resources.{type_name}` must map resource names to attributes")
        for name, attributes in blocks.items():
            if not isinstance(attributes, dict):
                raise ManifestError(f"Resource {type_name}.{name} must be a mapping of attributes")
            manifest.resources[f"{type_name}.{name}"] = DesiredResource(type=type_name, attributes=attributes)

    return manifest


# ============================================================================
# RECONCILIATION CONTROLLER
# ============================================================================

class ProviderController:
    """
    Main controller reconciling tracked state with a desired manifest
    """

    def __init__(self, provider: Provider, state_manager: StateManager):
        self.provider = provider
        self.state_manager = state_manager

    def refresh(self, tracked: Dict[str, TrackedResource], stats: ReconciliationStats) -> Dict[str, TrackedResource]:
        """
        Read every tracked resource back from the database

        Resources that no longer exist are dropped from state. Resources whose
        attributes differ from the recorded ones count as drift; the recorded
        state is replaced by what the database reports so the following plan
        converges it back.

        Args:
            tracked: Current tracked state
            stats: Statistics object to update

        Returns:
            Refreshed tracked state
        """
        refreshed = {}
        for address, entry in tracked.items():
            try:
                resource = self.provider.resource(entry.type)
                prior = resource.decode_state(entry.attributes)
                actual = resource.read(prior.oid, prior.name)
            except ProviderError as e:
                logger.error(f"Failed to refresh {address}: {e}")
                stats.record(e, address)
                refreshed[address] = entry
                continue

            if actual is None:
                logger.warning(f"{YELLOW}{address} no longer exists, removing it from state{RESET}")
                stats.record(RoleNotFoundError(prior.name, prior.oid), address)
                stats.drift_detected += 1
                continue

            drifted = changed_attributes(resource.schema, prior, actual)
            if drifted:
                logger.info(f"{YELLOW}Drift detected on {address}: {', '.join(drifted)}{RESET}")
                stats.drift_detected += 1
            refreshed[address] = TrackedResource(type=entry.type, attributes=actual.to_dict())

        return refreshed

    def plan(self, manifest: Manifest, tracked: Dict[str, TrackedResource]) -> List[PlannedChange]:
        """
        Compute the changes converging tracked state to the manifest

        Deletions come first so that names they free can be reused, then
        replacements, creations and in-place updates.

        Raises:
            ManifestError: a resource's attributes are invalid
        """
        deletes, replaces, creates, updates, noops = [], [], [], [], []

        for address, entry in tracked.items():
            if address not in manifest.resources:
                deletes.append(PlannedChange(DELETE, address, entry.type, prior=entry))

        for address, wanted in manifest.resources.items():
            resource = self.provider.resource(wanted.type)
            try:
                desired = resource.decode_desired(wanted.attributes)
            except ManifestError as e:
                raise ManifestError(f"{address}: {e.detail}") from e

            prior = tracked.get(address)
            if prior is None:
                creates.append(PlannedChange(CREATE, address, wanted.type, desired=desired))
                continue

            changed = changed_attributes(resource.schema, resource.decode_state(prior.attributes), desired)
            if not changed:
                noops.append(PlannedChange(NOOP, address, wanted.type, desired=desired, prior=prior))
            elif requires_replace(resource.schema, changed):
                replaces.append(PlannedChange(REPLACE, address, wanted.type, desired=desired, prior=prior, changed=changed))
            else:
                updates.append(PlannedChange(UPDATE, address, wanted.type, desired=desired, prior=prior, changed=changed))

        return deletes + replaces + creates + updates + noops

    def apply(self, manifest: Manifest, dry_run: bool = False) -> ReconciliationStats:
        """
        Refresh, plan and apply

        A failing resource is recorded and skipped; the others still converge.
        State is saved after every successful change.

        Args:
            manifest: Desired resources
            dry_run: If True, only log the planned changes

        Returns:
            Statistics for the cycle
        """
        stats = ReconciliationStats(start_time=datetime.now())
        tracked = self.refresh(self.state_manager.load_state(), stats)
        if not dry_run:
            self.state_manager.save_state(tracked)

        try:
            changes = self.plan(manifest, tracked)
        except ProviderError as e:
            logger.error(f"Planning failed: {e}")
            stats.record(e)
            stats.end_time = datetime.now()
            return stats

        for change in changes:
            if change.action == NOOP:
                continue
            if dry_run:
                logger.info(f"[DRY-RUN] Would {change.describe()}")
                continue
            try:
                self._apply_change(change, tracked, stats)
            except ProviderError as e:
                logger.error(f"{RED}Failed to {change.describe()}: {e}{RESET}")
                stats.record(e, change.address)

        stats.end_time = datetime.now()
        return stats

    def _apply_change(self, change: PlannedChange, tracked: Dict[str, TrackedResource], stats: ReconciliationStats):
        if change.action in (DELETE, REPLACE):
            old = self.provider.resource(change.prior.type)
            old.delete(change.prior.attributes["name"])
            tracked.pop(change.address, None)
            self.state_manager.save_state(tracked)
            if change.action == DELETE:
                stats.roles_deleted += 1
                logger.info(f"{WHITE}Deleted {change.address}{RESET}")
                return

        resource = self.provider.resource(change.type)
        if change.action in (CREATE, REPLACE):
            actual = resource.create(change.desired)
        else:
            actual = resource.update(change.desired, change.prior.attributes["oid"])

        tracked[change.address] = TrackedResource(type=change.type, attributes=actual.to_dict())
        self.state_manager.save_state(tracked)

        if change.action == CREATE:
            stats.roles_created += 1
        elif change.action == REPLACE:
            stats.roles_replaced += 1
        else:
            stats.roles_updated += 1
        logger.info(f"{WHITE}{change.describe().capitalize()} done{RESET}")

    def import_resource(self, address: str, type_name: str, token: str) -> TrackedResource:
        """
        Bring an existing role under management

        Raises:
            ImportTokenError: empty token
            RoleNotFoundError: no role with that name
            ManifestError: the address is already tracked
        """
        tracked = self.state_manager.load_state()
        if address in tracked:
            raise ManifestError(f"{address} is already managed; remove it from state before importing")

        resource = self.provider.resource(type_name)
        key = resource.import_state(token)
        actual = resource.read(None, key.value)
        if actual is None:
            raise RoleNotFoundError(key.value)

        entry = TrackedResource(type=type_name, attributes=actual.to_dict())
        tracked[address] = entry
        self.state_manager.save_state(tracked)
        logger.info(f"{WHITE}Imported {address} (oid {actual.oid}){RESET}")
        return entry

    def run_reconciliation_loop(self, manifest_file: str, dry_run: bool = False):
        """
        Main control loop that runs continuously
        """
        logger.info(f"{GREEN}Controller started (DRY_RUN={dry_run}){RESET}")
        logger.info(f"Sync interval: {Config.SYNC_INTERVAL}s")

        while True:
            try:
                logger.info("=" * 60)
                logger.info("Starting reconciliation cycle")
                manifest = parse_manifest(read_manifest(manifest_file), self.provider)
                stats = self.apply(manifest, dry_run=dry_run)
                log_summary(stats)
            except Exception as e:
                logger.error(f"Unexpected error in reconciliation loop: {e}", exc_info=True)

            logger.info(f"{BLUE}Sleeping for {Config.SYNC_INTERVAL}s...{RESET}")
            time.sleep(Config.SYNC_INTERVAL)


def read_manifest(path: str) -> str:
    try:
        with open(path, "r") as f:
            return f.read()
    except IOError as e:
        raise ManifestError(f"Unable to read manifest {path}: {e}") from e


def log_summary(stats: ReconciliationStats):
    logger.info("=" * 60)
    logger.info(f"{WHITE}Reconciliation Summary:{RESET}")
    logger.info(f"  • Roles created: {stats.roles_created}")
    logger.info(f"  • Roles updated: {stats.roles_updated}")
    logger.info(f"  • Roles replaced: {stats.roles_replaced}")
    logger.info(f"  • Roles deleted: {stats.roles_deleted}")
    logger.info(f"  • Drift detected: {stats.drift_detected}")
    logger.info(f"  • Errors: {stats.errors}")
    logger.info(f"  • Duration: {stats.duration_seconds():.2f}s")
    for diagnostic in stats.diagnostics:
        logger.info(f"  • [{diagnostic.severity}] {diagnostic.address or '-'}: {diagnostic.summary}: {diagnostic.detail}")
    logger.info("=" * 60)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="postgresql-provider", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--manifest", default=Config.MANIFEST_FILE, help="YAML manifest of desired resources")
    parser.add_argument("--state", default=Config.STATE_FILE, help="JSON file holding tracked state")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("plan", help="show the changes apply would make")
    apply_parser = sub.add_parser("apply", help="converge the database to the manifest")
    apply_parser.add_argument("--dry-run", action="store_true", default=Config.DRY_RUN)
    watch_parser = sub.add_parser("watch", help="apply every SYNC_INTERVAL seconds")
    watch_parser.add_argument("--dry-run", action="store_true", default=Config.DRY_RUN)
    import_parser = sub.add_parser("import", help="bring an existing role under management")
    import_parser.add_argument("address", help="resource address, e.g. postgresql_role.app")
    import_parser.add_argument("id", help="role name")
    return parser


def main(argv: Optional[List[str]] = None, provider: Optional[Provider] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    configure_logging(Config.LOG_LEVEL)

    provider = provider or Provider()
    try:
        if args.command == "import" and not os.path.exists(args.manifest):
            manifest_text = ""
        else:
            manifest_text = read_manifest(args.manifest)
        manifest = parse_manifest(manifest_text, provider)
        settings = manifest.provider or ProviderSettings.from_env()
        provider.configure(settings)
    except ProviderError as e:
        logger.critical(f"{e.summary}: {e}")
        return 1

    controller = ProviderController(provider, StateManager(args.state))
    try:
        if args.command == "import":
            type_name = args.address.split(".", 1)[0]
            controller.import_resource(args.address, type_name, args.id)
            return 0
        if args.command == "watch":
            controller.run_reconciliation_loop(args.manifest, dry_run=args.dry_run)
            return 0
        stats = controller.apply(manifest, dry_run=(args.command == "plan" or args.dry_run))
        log_summary(stats)
        return 1 if stats.errors else 0
    except ProviderError as e:
        logger.error(f"{e.summary}: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
        return 0
    finally:
        provider.close()


if __name__ == "__main__":
    sys.exit(main())

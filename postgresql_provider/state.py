"""
Persistent tracked state, keyed by resource address.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger("postgresql-provider.state")

STATE_FORMAT_VERSION = 1


@dataclass
class TrackedResource:
    """Last known actual state of one managed resource"""
    type: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type, "attributes": dict(self.attributes)}


class StateManager:
    """Manages persistent state for drift detection"""

    def __init__(self, state_file: str):
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

    def load_state(self) -> Dict[str, TrackedResource]:
        """
        Load tracked state from disk

        Returns:
            Dictionary mapping resource address to TrackedResource
        """
        if not self.state_file.exists():
            logger.info("No previous state file found, starting fresh")
            return {}

        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
            return {
                address: TrackedResource(type=entry["type"], attributes=entry.get("attributes", {}))
                for address, entry in data.get("resources", {}).items()
            }
        except (json.JSONDecodeError, KeyError, AttributeError, IOError) as e:
            logger.error(f"Error loading state file: {e}, starting fresh")
            return {}

    def save_state(self, resources: Dict[str, TrackedResource]):
        """
        Save tracked state to disk

        The file is replaced atomically so a crash never leaves half a state behind.

        Args:
            resources: Dictionary mapping resource address to TrackedResource
        """
        data = {
            "version": STATE_FORMAT_VERSION,
            "resources": {
                address: resource.to_dict()
                for address, resource in sorted(resources.items())
            },
        }
        tmp_file = self.state_file.with_name(self.state_file.name + ".tmp")
        with open(tmp_file, "w") as f:
            json.dump(data, f, indent=2)
        tmp_file.replace(self.state_file)
        logger.debug(f"State saved to {self.state_file}")

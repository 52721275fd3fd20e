"""
Resource registry and the provider entry point.

The host never hard-codes resource classes: it asks the registry for a
resource type tag and gets back an object implementing the Resource
operation set, bound to the provider's ConnectionContext.
"""

import logging
from typing import Callable, Dict, List, Optional

from .config import ProviderSettings
from .context import ConnectionContext, configure
from .errors import UnknownResourceTypeError
from .resource import Resource
from .role import ROLE_TYPE_NAME, RoleReconciler

logger = logging.getLogger("postgresql-provider.registry")

PROVIDER_TYPE_NAME = "postgresql"

ResourceFactory = Callable[[ConnectionContext], Resource]


class ResourceRegistry:
    """Maps resource type tags to resource constructors"""

    def __init__(self):
        self._factories: Dict[str, ResourceFactory] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        self._factories[ROLE_TYPE_NAME] = RoleReconciler

    def register(self, type_name: str, factory: ResourceFactory) -> None:
        """Register a resource constructor under a type tag"""
        self._factories[type_name] = factory

    def create(self, type_name: str, context: ConnectionContext) -> Resource:
        """Build a resource of the given type bound to the context"""
        if type_name not in self._factories:
            raise UnknownResourceTypeError(type_name, self.list_types())
        return self._factories[type_name](context)

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._factories

    def list_types(self) -> List[str]:
        return sorted(self._factories)


class Provider:
    """
    The provider as seen by the orchestrator host

    configure() builds the ConnectionContext once; resource() hands out
    resources bound to it. The context is passed explicitly, never kept at
    module level.
    """

    type_name = PROVIDER_TYPE_NAME

    def __init__(self, version: str = "dev", registry: Optional[ResourceRegistry] = None, pool_factory=None):
        self.version = version
        self.registry = registry or ResourceRegistry()
        self._pool_factory = pool_factory
        self._context: Optional[ConnectionContext] = None
        self._resources: Dict[str, Resource] = {}

    @property
    def context(self) -> ConnectionContext:
        if self._context is None:
            raise RuntimeError("Provider has not been configured")
        return self._context

    def configure(self, settings: ProviderSettings) -> ConnectionContext:
        if self._pool_factory is not None:
            self._context = configure(settings, pool_factory=self._pool_factory)
        else:
            self._context = configure(settings)
        self._resources.clear()
        return self._context

    def resource(self, type_name: str) -> Resource:
        """Resource for a type tag, built on first use"""
        if type_name not in self._resources:
            self._resources[type_name] = self.registry.create(type_name, self.context)
        return self._resources[type_name]

    def close(self) -> None:
        if self._context is not None:
            self._context.close()
            self._context = None
            self._resources.clear()

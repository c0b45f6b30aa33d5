"""
Registry of running server instances.

The registry is a plain object owned by a LifecycleController; there is no
process-wide instance. An entry exists only while its listener is serving.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional

from fastapi import FastAPI

from .application import ManagedListener
from .errors import DuplicateInstance, NotFoundFailure
from .routes import RouteSource


logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    """Server instance states"""
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class InstanceConfig:
    """
    Everything needed to (re)create an instance.

    Attributes:
        name: Logical instance name
        route_source: Inline routes or path of a route module
        start_port: First port to probe
        views_path: Template directory override
        assets_path: Static directory override
    """
    name: str
    route_source: RouteSource
    start_port: int
    views_path: Optional[str] = None
    assets_path: Optional[str] = None


@dataclass
class ServerInstance:
    """
    Runtime record of one managed listener.

    Attributes:
        name: Logical instance name (registry key)
        application: FastAPI app owned by this instance
        listener: Live listener owned by this instance
        route_source: Route source the instance was built from
        port: Port actually bound
        url: Public URL of the listener
        views_path: Template directory override
        assets_path: Static directory override
        state: Current state
        created_at: Creation timestamp
    """
    name: str
    application: FastAPI
    listener: ManagedListener
    route_source: RouteSource
    port: int
    url: str
    views_path: Optional[str] = None
    assets_path: Optional[str] = None
    state: ServerState = ServerState.RUNNING
    created_at: float = field(default_factory=time.time)

    def config(self) -> InstanceConfig:
        """Configuration that rebuilds this instance, starting at its last port"""
        return InstanceConfig(
            name=self.name,
            route_source=self.route_source,
            start_port=self.port,
            views_path=self.views_path,
            assets_path=self.assets_path,
        )


class InstanceRegistry:
    """
    Mapping from logical name to ServerInstance.

    At most one entry per name. Ports are not tracked here; the OS rejects
    a second bind on the same port.
    """

    def __init__(self):
        self._instances: Dict[str, ServerInstance] = {}

    def add(self, instance: ServerInstance) -> None:
        """
        Insert a running instance.

        Raises:
            DuplicateInstance: If the name is already registered
        """
        if instance.name in self._instances:
            raise DuplicateInstance(instance.name)
        self._instances[instance.name] = instance
        logger.debug(f"Registered {instance.name} on port {instance.port}")

    def get(self, name: str) -> ServerInstance:
        """
        Look up an instance.

        Raises:
            NotFoundFailure: If name is not registered
        """
        instance = self._instances.get(name)
        if instance is None:
            raise NotFoundFailure(name)
        return instance

    def find(self, name: str) -> Optional[ServerInstance]:
        """Look up an instance, returning None when absent"""
        return self._instances.get(name)

    def remove(self, name: str) -> ServerInstance:
        """
        Remove an instance and mark it stopped.

        Raises:
            NotFoundFailure: If name is not registered
        """
        instance = self.get(name)
        del self._instances[name]
        instance.state = ServerState.STOPPED
        logger.debug(f"Unregistered {name}")
        return instance

    def names(self) -> List[str]:
        return list(self._instances)

    def instances(self) -> List[ServerInstance]:
        return list(self._instances.values())

    def __contains__(self, name: object) -> bool:
        return name in self._instances

    def __len__(self) -> int:
        return len(self._instances)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._instances))

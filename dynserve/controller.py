"""
Lifecycle controller for named HTTP server instances.

Public operations:
- create: build and start an instance (create-or-noop by name)
- stop: close an instance's listener and unregister it
- reset: stop then create again with the same configuration
- add_route: register a route on a running instance

create reports failure as a False return. The other operations raise.
"""

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .application import ManagedListener, build_application, register_route
from .config import DEFAULT_CONFIG, DynServeConfig
from .errors import CloseFailure, CreationFailure, NotFoundFailure
from .ports import PortAllocator
from .registry import InstanceConfig, InstanceRegistry, ServerInstance
from .routes import RouteSpec, resolve_route_source


logger = logging.getLogger(__name__)


class ReturnMode(str, Enum):
    """What a successful create returns"""
    BOOLEAN = "bool"
    URL = "url"


CreateResult = Union[bool, str]


class LifecycleController:
    """
    Creates, stops, resets and extends named server instances.

    Calls for the same name are serialized with a per-name lock, and port
    allocation plus bind is serialized across all names, so two creates in
    this process never race for a name or a port.

    Example:
        async with LifecycleController() as controller:
            url = await controller.create(
                {"name": "api", "route_source": routes, "start_port": 3000},
                return_url="url",
            )
    """

    def __init__(
        self,
        config: DynServeConfig = DEFAULT_CONFIG,
        registry: Optional[InstanceRegistry] = None,
        allocator: Optional[PortAllocator] = None
    ):
        """
        Initialize controller.

        Args:
            config: Listener and allocation configuration
            registry: Registry to manage (a new one by default)
            allocator: Port allocator (built from config by default)
        """
        self.config = config
        self.registry = registry if registry is not None else InstanceRegistry()
        self.allocator = allocator or PortAllocator(
            host=config.host,
            max_attempts=config.max_attempts
        )
        self._name_locks: Dict[str, asyncio.Lock] = {}
        self._name_users: Dict[str, int] = {}
        self._allocation_lock = asyncio.Lock()

    async def __aenter__(self) -> "LifecycleController":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown_all()

    @contextlib.asynccontextmanager
    async def _name_guard(self, name: str):
        """
        Hold the per-name lock.

        The lock is dropped once nobody holds or waits for it and the name
        is not registered.
        """
        lock = self._name_locks.setdefault(name, asyncio.Lock())
        self._name_users[name] = self._name_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._name_users[name] -= 1
            if not self._name_users[name]:
                del self._name_users[name]
                if name not in self.registry:
                    del self._name_locks[name]

    async def create(
        self,
        config: Union[InstanceConfig, Mapping[str, Any]],
        return_url: Union[bool, str] = False
    ) -> CreateResult:
        """
        Create and start an instance unless one with the same name exists.

        Args:
            config: InstanceConfig or a mapping of its fields
            return_url: True or "url" to get the instance URL back

        Returns:
            True (or the URL) on success, True without changes if the name
            already exists, False if the instance could not be created
        """
        if not isinstance(config, InstanceConfig):
            try:
                config = InstanceConfig(**config)
            except TypeError:
                name = config.get("name")
                logger.exception(f"Error creating server {name}: invalid configuration")
                return False

        async with self._name_guard(config.name):
            return await self._create_unlocked(config, return_url)

    async def _create_unlocked(
        self,
        config: InstanceConfig,
        return_url: Union[bool, str]
    ) -> CreateResult:
        if config.name in self.registry:
            logger.debug(f"Server {config.name} already exists")
            return True

        try:
            routes = resolve_route_source(config.route_source)
            port, application, listener = await self._start_listener(config, routes)
        except Exception:
            logger.exception(f"Error creating server {config.name}")
            return False

        instance = ServerInstance(
            name=config.name,
            application=application,
            listener=listener,
            route_source=config.route_source,
            port=port,
            url=self.config.url_for_port(port),
            views_path=config.views_path,
            assets_path=config.assets_path,
        )
        self.registry.add(instance)
        logger.info(f"Server {config.name} listening on {instance.url}")

        if return_url is True or return_url == ReturnMode.URL.value:
            return instance.url
        return True

    async def _start_listener(self, config: InstanceConfig, routes: List[RouteSpec]):
        """
        Allocate a port, build the application and bind it.

        A bind that fails after a successful probe means someone took the
        port in between; allocation is re-run up to config.bind_retries times.
        """
        application = None

        async with self._allocation_lock:
            for attempt in range(self.config.bind_retries + 1):
                port = await self.allocator.allocate(config.start_port)

                if application is None:
                    application = build_application(
                        views_path=config.views_path,
                        assets_path=config.assets_path,
                        config=self.config
                    )
                    for route in routes:
                        register_route(application, route)

                try:
                    listener = await ManagedListener.start(
                        application,
                        host=self.config.host,
                        port=port,
                        log_level=self.config.log_level
                    )
                except OSError as e:
                    if attempt >= self.config.bind_retries:
                        raise
                    logger.warning(
                        f"Port {port} was taken before bind ({e}), "
                        f"allocating again for {config.name}"
                    )
                    continue

                return listener.port, application, listener

        # bind_retries < 0
        raise RuntimeError(f"No bind attempted for {config.name}")

    async def stop(self, name: str) -> bool:
        """
        Close an instance's listener and remove it from the registry.

        Returns:
            True once the listener is closed

        Raises:
            NotFoundFailure: If name is not registered
            CloseFailure: If the listener failed to close (entry kept)
        """
        async with self._name_guard(name):
            return await self._stop_unlocked(name)

    async def _stop_unlocked(self, name: str) -> bool:
        instance = self.registry.get(name)

        try:
            await instance.listener.close()
        except Exception as e:
            logger.error(f"Error closing server {name}: {e}")
            raise CloseFailure(name) from e

        self.registry.remove(name)
        logger.info(f"Server {name} stopped (port {instance.port} released)")
        return True

    async def reset(self, name: str, return_url: Union[bool, str] = False) -> CreateResult:
        """
        Stop an instance and create it again from its stored configuration.

        The new listener starts probing at the previously bound port. If the
        new create fails the name stays unregistered.

        Returns:
            Result of the new create (True or the URL)

        Raises:
            NotFoundFailure: If name is not registered
            CloseFailure: If the old listener failed to close
            CreationFailure: If the instance could not be created again
        """
        async with self._name_guard(name):
            instance = self.registry.get(name)
            config = instance.config()

            await self._stop_unlocked(name)

            result = await self._create_unlocked(config, return_url)
            if not result:
                logger.error(f"Error resetting server {name}")
                raise CreationFailure(name)

            logger.info(f"Server {name} reset")
            return result

    def add_route(
        self,
        name: str,
        route: Union[RouteSpec, Mapping[str, Any]]
    ) -> None:
        """
        Register a route on a running instance without restarting it.

        Raises:
            NotFoundFailure: If name is not registered
            RouteSourceError: If route is not a valid route
        """
        instance = self.registry.get(name)
        route = RouteSpec.from_value(route)

        register_route(instance.application, route)
        logger.info(f"New route added to {name}: {route.describe()}")

    def get(self, name: str) -> ServerInstance:
        """
        Get a running instance.

        Raises:
            NotFoundFailure: If name is not registered
        """
        return self.registry.get(name)

    def list_instances(self) -> List[ServerInstance]:
        """All running instances"""
        return self.registry.instances()

    def url_for(self, name: str) -> str:
        """
        URL of a running instance.

        Raises:
            NotFoundFailure: If name is not registered
        """
        return self.registry.get(name).url

    async def shutdown_all(self) -> None:
        """
        Stop every registered instance.

        Every instance is attempted; names stopped concurrently are skipped.
        The first close failure is raised at the end and the failed
        instances stay registered.
        """
        failures: List[CloseFailure] = []

        for name in self.registry.names():
            try:
                await self.stop(name)
            except NotFoundFailure:
                logger.debug(f"Server {name} already stopped")
            except CloseFailure as e:
                failures.append(e)

        if failures:
            raise failures[0]

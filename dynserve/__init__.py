"""
dynserve: named HTTP server instances managed inside one process.

Provides port discovery and lifecycle management (create, stop, reset,
add route) for multiple concurrent in-process servers.
"""

from .config import DynServeConfig, DEFAULT_CONFIG
from .controller import LifecycleController, ReturnMode
from .errors import (
    DynServeError,
    AllocationFailure,
    NotFoundFailure,
    CreationFailure,
    CloseFailure,
    DuplicateInstance,
    RouteSourceError,
)
from .ports import PortAllocator, probe_port
from .registry import (
    InstanceConfig,
    InstanceRegistry,
    ServerInstance,
    ServerState,
)
from .routes import HTTPMethod, RouteSpec, load_routes, resolve_route_source

__version__ = "1.0.0"

__all__ = [
    # Lifecycle
    'LifecycleController',
    'ReturnMode',
    'InstanceConfig',
    'InstanceRegistry',
    'ServerInstance',
    'ServerState',

    # Ports
    'PortAllocator',
    'probe_port',

    # Routes
    'HTTPMethod',
    'RouteSpec',
    'load_routes',
    'resolve_route_source',

    # Configuration
    'DynServeConfig',
    'DEFAULT_CONFIG',

    # Errors
    'DynServeError',
    'AllocationFailure',
    'NotFoundFailure',
    'CreationFailure',
    'CloseFailure',
    'DuplicateInstance',
    'RouteSourceError',
]

"""
Route specs and the route loader.

A route source is either an inline sequence of routes or the path of a
Python module that defines them. Modules expose either a ``routes`` list
or a ``get_routes()`` function returning one. Each route is a RouteSpec
or a mapping with ``method``, ``path`` and ``handler`` keys.
"""

import importlib.util
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Mapping, Sequence, Union

from .errors import RouteSourceError


logger = logging.getLogger(__name__)


class HTTPMethod(str, Enum):
    """HTTP methods a route can be registered for"""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


class RouteSourceType(str, Enum):
    """Kinds of route source"""
    INLINE = "inline"
    FILE = "file"


ROUTE_MODULE_SUFFIX = ".py"
ROUTES_ATTRIBUTE = "routes"
ROUTES_FACTORY = "get_routes"


@dataclass(frozen=True)
class RouteSpec:
    """
    A single (method, path, handler) route.

    Attributes:
        method: HTTP method
        path: URL path pattern (FastAPI syntax, e.g. /items/{item_id})
        handler: Endpoint callable
    """
    method: HTTPMethod
    path: str
    handler: Callable[..., Any]

    def __post_init__(self):
        try:
            method = HTTPMethod(str(getattr(self.method, "value", self.method)).upper())
        except ValueError:
            raise RouteSourceError(f"Unsupported HTTP method: {self.method!r}") from None
        # frozen dataclass
        object.__setattr__(self, "method", method)

        if not isinstance(self.path, str) or not self.path.startswith("/"):
            raise RouteSourceError(f"Route path must start with '/': {self.path!r}")
        if not callable(self.handler):
            raise RouteSourceError(f"Handler for {self.method.value} {self.path} is not callable")

    @classmethod
    def from_value(cls, value: Union["RouteSpec", Mapping[str, Any]]) -> "RouteSpec":
        """
        Coerce a RouteSpec or a mapping into a RouteSpec.

        Raises:
            RouteSourceError: If the value is not a valid route
        """
        if isinstance(value, RouteSpec):
            return value
        if isinstance(value, Mapping):
            missing = [key for key in ("method", "path", "handler") if key not in value]
            if missing:
                raise RouteSourceError(f"Route is missing {', '.join(missing)}: {value!r}")
            return cls(method=value["method"], path=value["path"], handler=value["handler"])
        raise RouteSourceError(f"Not a route: {value!r}")

    def describe(self) -> str:
        """Human-readable METHOD path"""
        return f"{self.method.value} {self.path}"


RouteSource = Union[Sequence[Union[RouteSpec, Mapping[str, Any]]], str, Path]


def classify_route_source(source: RouteSource) -> RouteSourceType:
    """
    Decide whether a route source is an inline list or a module file.

    Raises:
        RouteSourceError: If source is neither, or the file does not exist
    """
    if isinstance(source, (str, Path)):
        path = Path(source)
        if path.suffix != ROUTE_MODULE_SUFFIX:
            raise RouteSourceError(
                "routes must be a list of routes or the path of a .py file"
            )
        if not path.is_file():
            raise RouteSourceError(f"The file {source} does not exist.")
        return RouteSourceType.FILE

    if isinstance(source, Sequence):
        return RouteSourceType.INLINE

    raise RouteSourceError(
        "routes must be a list of routes or the path of a .py file"
    )


def load_routes(source: Union[str, Path], silent: bool = False) -> List[RouteSpec]:
    """
    Import a route module from disk and read its routes.

    The module is executed fresh on every call so edited route files are
    picked up by a reset.

    Args:
        source: Path to a .py file
        silent: Log at DEBUG instead of INFO

    Returns:
        List of RouteSpec

    Raises:
        RouteSourceError: If the module cannot be imported or defines no routes
    """
    path = Path(source).resolve()
    log = logger.debug if silent else logger.info

    module_name = f"dynserve_routes_{path.stem}_{uuid.uuid4().hex[:8]}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise RouteSourceError(f"Cannot import route module {path}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise RouteSourceError(f"Error loading route module {path}: {e}") from e

    if hasattr(module, ROUTES_FACTORY):
        raw_routes = getattr(module, ROUTES_FACTORY)()
    elif hasattr(module, ROUTES_ATTRIBUTE):
        raw_routes = getattr(module, ROUTES_ATTRIBUTE)
    else:
        raise RouteSourceError(
            f"Route module {path} defines neither '{ROUTES_ATTRIBUTE}' "
            f"nor '{ROUTES_FACTORY}()'"
        )

    if isinstance(raw_routes, (str, bytes)) or not isinstance(raw_routes, Sequence):
        raise RouteSourceError(f"Routes in {path} must be a list")

    routes = [RouteSpec.from_value(route) for route in raw_routes]
    log(f"Loaded {len(routes)} route(s) from {path}")
    return routes


def resolve_route_source(source: RouteSource) -> List[RouteSpec]:
    """
    Turn any route source into a concrete list of routes.

    File sources go through load_routes silently.

    Raises:
        RouteSourceError: If the source or any route in it is invalid
    """
    source_type = classify_route_source(source)

    if source_type == RouteSourceType.FILE:
        return load_routes(source, silent=True)

    return [RouteSpec.from_value(route) for route in source]

"""
Port discovery for managed listeners.

Provides the two leaf operations the controller builds on:
- probe_port: is a single port bindable right now?
- PortAllocator: first bindable port at or above a starting hint

A successful probe releases the port again before returning, so another
process can still take it before the real bind happens. Callers treat a
failed real bind as a reason to allocate again.
"""

import asyncio
import logging
from typing import Optional

from .config import AllocationLimit, DEFAULT_CONFIG
from .errors import AllocationFailure


logger = logging.getLogger(__name__)


async def probe_port(port: int, host: str = DEFAULT_CONFIG.host) -> bool:
    """
    Check whether a port can be bound for listening at this instant.

    Args:
        port: Port number to check
        host: Interface to bind on

    Returns:
        True if a temporary listener could bind the port
    """
    loop = asyncio.get_running_loop()
    try:
        tester = await loop.create_server(asyncio.Protocol, host=host, port=port)
    except (OSError, OverflowError, ValueError) as e:
        logger.debug(f"Port {port} unavailable on {host}: {e}")
        return False

    tester.close()
    await tester.wait_closed()
    return True


class PortAllocator:
    """
    Sequential port allocator.

    Probes start_port, start_port + 1, ... in order and returns the first
    bindable one, so related instances end up on predictable ports.
    Holds no record of what it handed out; the OS is the only authority.
    """

    def __init__(
        self,
        host: str = DEFAULT_CONFIG.host,
        max_attempts: int = DEFAULT_CONFIG.max_attempts
    ):
        """
        Initialize port allocator.

        Args:
            host: Interface ports are probed on
            max_attempts: Default number of consecutive ports to probe
        """
        self.host = host
        self.max_attempts = max_attempts

    async def allocate(
        self,
        start_port: int,
        max_attempts: Optional[int] = None
    ) -> int:
        """
        Find the first bindable port in [start_port, start_port + max_attempts).

        Args:
            start_port: First port to probe
            max_attempts: Number of ports to probe (defaults to allocator's)

        Returns:
            Available port number

        Raises:
            ValueError: If start_port is not a valid port or max_attempts is less than 1
            AllocationFailure: If every candidate is taken
        """
        if max_attempts is None:
            max_attempts = self.max_attempts
        if not 1 <= start_port <= AllocationLimit.MAX_PORT.value:
            raise ValueError(
                f"start_port must be between 1 and {AllocationLimit.MAX_PORT.value}, got {start_port}"
            )
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

        for offset in range(max_attempts):
            port = start_port + offset
            if await probe_port(port, self.host):
                if offset:
                    logger.info(
                        f"Port {start_port} not available, using {port} "
                        f"after {offset + 1} probe(s)"
                    )
                return port

        raise AllocationFailure(start_port, max_attempts)

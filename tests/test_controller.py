"""
Integration tests for LifecycleController

Runs real listeners on loopback ports and talks to them over HTTP.
"""

import asyncio
import textwrap
from unittest.mock import AsyncMock

import httpx
import pytest

from dynserve.config import DynServeConfig
from dynserve.controller import LifecycleController, ReturnMode
from dynserve.errors import CloseFailure, CreationFailure, NotFoundFailure
from dynserve.ports import PortAllocator, probe_port
from dynserve.registry import InstanceConfig, ServerState
from dynserve.routes import HTTPMethod, RouteSpec

from conftest import LOOPBACK, occupied, ping


async def fetch(url: str) -> httpx.Response:
    async with httpx.AsyncClient() as client:
        return await client.get(url)


def instance_config(name, routes, start_port, **kwargs):
    return {"name": name, "route_source": routes, "start_port": start_port, **kwargs}


class TestCreate:
    """Tests for LifecycleController.create"""

    @pytest.mark.asyncio
    async def test_create_returns_true_and_serves(self, controller, sample_routes, port_base):
        """Test create binds the start port and serves routes"""
        # Act
        result = await controller.create(instance_config("api", sample_routes, port_base))

        # Assert
        assert result is True
        instance = controller.get("api")
        assert instance.port == port_base
        assert instance.state == ServerState.RUNNING
        response = await fetch(f"http://{LOOPBACK}:{port_base}/hello")
        assert response.json() == {"message": "hello"}

    @pytest.mark.asyncio
    async def test_create_returns_url(self, controller, sample_routes, port_base):
        """Test "url" return mode yields the instance URL"""
        # Act
        result = await controller.create(
            instance_config("api", sample_routes, port_base),
            return_url=ReturnMode.URL.value,
        )

        # Assert
        assert result == f"http://{LOOPBACK}:{port_base}/"
        assert controller.url_for("api") == result

    @pytest.mark.asyncio
    async def test_default_url_uses_localhost(self, sample_routes, port_base):
        """Test the default URL host is localhost"""
        # Arrange
        controller = LifecycleController(DynServeConfig(host=LOOPBACK))

        # Act
        try:
            result = await controller.create(
                InstanceConfig(name="api", route_source=sample_routes, start_port=port_base),
                return_url=True,
            )
        finally:
            await controller.shutdown_all()

        # Assert
        assert result == f"http://localhost:{port_base}/"

    @pytest.mark.asyncio
    async def test_create_is_idempotent_by_name(self, controller, sample_routes, port_base):
        """Test a second create for an existing name changes nothing"""
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))
        original = controller.get("api")

        # Act
        result = await controller.create(
            instance_config("api", [], port_base + 5),
            return_url="url",
        )

        # Assert
        assert result is True
        assert controller.get("api") is original
        assert len(controller.registry) == 1

    @pytest.mark.asyncio
    async def test_create_skips_occupied_start_port(self, controller, sample_routes, port_base):
        """Test start port occupied binds on the next free port"""
        # Arrange
        with occupied(port_base):
            # Act
            result = await controller.create(instance_config("x", sample_routes, port_base))

        # Assert
        assert result is True
        assert controller.get("x").port == port_base + 1

    @pytest.mark.asyncio
    async def test_allocated_port_is_taken_after_create(self, controller, sample_routes, port_base):
        """Test the bound port no longer probes as free"""
        # Act
        await controller.create(instance_config("api", sample_routes, port_base))

        # Assert
        port = controller.get("api").port
        assert port_base <= port < port_base + 10
        assert await probe_port(port, LOOPBACK) is False

    @pytest.mark.asyncio
    async def test_create_fails_when_no_port(self, controller, sample_routes, port_base):
        """Test allocation failure is reported as False with nothing registered"""
        # Arrange
        controller.allocator = PortAllocator(host=LOOPBACK, max_attempts=2)

        # Act
        with occupied(port_base, port_base + 1):
            result = await controller.create(instance_config("api", sample_routes, port_base))

        # Assert
        assert result is False
        assert "api" not in controller.registry

    @pytest.mark.asyncio
    async def test_create_fails_on_bad_route_source(self, controller, tmp_path, port_base):
        """Test an invalid route source is reported as False"""
        # Act
        result = await controller.create(
            instance_config("api", str(tmp_path / "missing.py"), port_base)
        )

        # Assert
        assert result is False
        assert len(controller.registry) == 0
        assert await probe_port(port_base, LOOPBACK) is True

    @pytest.mark.asyncio
    async def test_create_from_route_module(self, controller, tmp_path, port_base):
        """Test file route sources are loaded"""
        # Arrange
        module = tmp_path / "routes_app.py"
        module.write_text(textwrap.dedent(
            """
            async def status():
                return {"ok": True}

            routes = [{"method": "GET", "path": "/status", "handler": status}]
            """
        ))

        # Act
        await controller.create(instance_config("api", str(module), port_base))

        # Assert
        response = await fetch(f"http://{LOOPBACK}:{controller.get('api').port}/status")
        assert response.json() == {"ok": True}

    @pytest.mark.asyncio
    async def test_concurrent_creates_same_name(self, controller, sample_routes, port_base):
        """Test concurrent creates for one new name register it once"""
        # Act
        results = await asyncio.gather(
            controller.create(instance_config("api", sample_routes, port_base)),
            controller.create(instance_config("api", sample_routes, port_base)),
        )

        # Assert
        assert results == [True, True]
        assert controller.registry.names() == ["api"]
        assert await probe_port(port_base + 1, LOOPBACK) is True

    @pytest.mark.asyncio
    async def test_concurrent_creates_different_names(self, controller, sample_routes, port_base):
        """Test concurrent creates from the same start port get distinct ports"""
        # Act
        results = await asyncio.gather(*[
            controller.create(instance_config(name, sample_routes, port_base))
            for name in ("a", "b", "c")
        ])

        # Assert
        assert results == [True, True, True]
        ports = sorted(instance.port for instance in controller.list_instances())
        assert ports == [port_base, port_base + 1, port_base + 2]

    @pytest.mark.asyncio
    async def test_bind_race_reallocates(self, controller, sample_routes, port_base):
        """Test a port taken between probe and bind triggers a new allocation"""
        # Arrange
        allocate = AsyncMock(side_effect=[port_base, port_base + 1])
        controller.allocator.allocate = allocate

        # Act
        with occupied(port_base):
            result = await controller.create(instance_config("api", sample_routes, port_base))

        # Assert
        assert result is True
        assert controller.get("api").port == port_base + 1
        assert allocate.await_count == 2

    @pytest.mark.asyncio
    async def test_bind_race_gives_up_after_retries(self, sample_routes, port_base, test_config):
        """Test repeated bind losses end in failure"""
        # Arrange
        test_config.bind_retries = 1
        controller = LifecycleController(test_config)
        controller.allocator.allocate = AsyncMock(return_value=port_base)

        # Act
        with occupied(port_base):
            result = await controller.create(instance_config("api", sample_routes, port_base))

        # Assert
        assert result is False
        assert controller.allocator.allocate.await_count == 2
        assert len(controller.registry) == 0

    @pytest.mark.asyncio
    async def test_create_with_incomplete_mapping(self, controller, port_base):
        """Test a config mapping without route_source is reported as False"""
        # Act
        result = await controller.create({"name": "m", "start_port": port_base})

        # Assert
        assert result is False
        assert len(controller.registry) == 0

    @pytest.mark.asyncio
    async def test_create_with_unknown_key(self, controller, sample_routes, port_base):
        """Test unexpected config keys are reported as False"""
        # Act
        result = await controller.create(
            instance_config("m", sample_routes, port_base, colour="blue")
        )

        # Assert
        assert result is False
        assert "m" not in controller.registry

    @pytest.mark.asyncio
    async def test_create_rejects_port_zero(self, controller, sample_routes):
        """Test start port 0 fails instead of binding an untracked ephemeral port"""
        # Act
        result = await controller.create(instance_config("z", sample_routes, 0), return_url="url")

        # Assert
        assert result is False
        assert "z" not in controller.registry

    @pytest.mark.asyncio
    async def test_failed_create_drops_name_lock(self, controller, tmp_path, port_base):
        """Test no per-name lock is kept for names that never registered"""
        # Act
        await controller.create(instance_config("api", str(tmp_path / "missing.py"), port_base))

        # Assert
        assert controller._name_locks == {}


class TestStop:
    """Tests for LifecycleController.stop"""

    @pytest.mark.asyncio
    async def test_stop_releases_port(self, controller, sample_routes, port_base):
        """Test stop unregisters the instance and frees its port"""
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))
        instance = controller.get("api")

        # Act
        result = await controller.stop("api")

        # Assert
        assert result is True
        assert "api" not in controller.registry
        assert instance.state == ServerState.STOPPED
        assert await probe_port(port_base, LOOPBACK) is True

    @pytest.mark.asyncio
    async def test_stop_missing_name(self, controller, sample_routes, port_base):
        """Test stop of an absent name fails without touching the registry"""
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))

        # Act / Assert
        with pytest.raises(NotFoundFailure):
            await controller.stop("other")
        assert controller.registry.names() == ["api"]

    @pytest.mark.asyncio
    async def test_stop_close_error_keeps_entry(
        self, controller, sample_routes, port_base, monkeypatch
    ):
        """Test a failed close propagates and leaves the instance registered"""
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))
        listener = controller.get("api").listener
        monkeypatch.setattr(listener, "close", AsyncMock(side_effect=RuntimeError("stuck")))

        # Act
        with pytest.raises(CloseFailure) as exc_info:
            await controller.stop("api")

        # Assert
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "api" in controller.registry
        assert controller.get("api").state == ServerState.RUNNING
        monkeypatch.undo()

    @pytest.mark.asyncio
    async def test_context_manager_stops_everything(self, test_config, sample_routes, port_base):
        """Test leaving the controller context stops all instances"""
        # Act
        async with LifecycleController(test_config) as controller:
            await controller.create(instance_config("a", sample_routes, port_base))
            await controller.create(instance_config("b", sample_routes, port_base))

        # Assert
        assert len(controller.registry) == 0
        assert await probe_port(port_base, LOOPBACK) is True
        assert await probe_port(port_base + 1, LOOPBACK) is True


    @pytest.mark.asyncio
    async def test_stop_drops_name_lock(self, controller, sample_routes, port_base):
        """Test stopped names do not leave their lock behind"""
        # Arrange
        await controller.create(instance_config("a", sample_routes, port_base))
        await controller.create(instance_config("b", sample_routes, port_base))

        # Act
        await controller.stop("a")

        # Assert
        assert list(controller._name_locks) == ["b"]

    @pytest.mark.asyncio
    async def test_shutdown_all_skips_names_already_stopped(
        self, controller, sample_routes, port_base, monkeypatch
    ):
        """Test a name removed mid-shutdown does not abort the remaining stops"""
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))
        monkeypatch.setattr(controller.registry, "names", lambda: ["gone", "api"])

        # Act
        await controller.shutdown_all()

        # Assert
        assert "api" not in controller.registry
        assert await probe_port(port_base, LOOPBACK) is True


class TestReset:
    """Tests for LifecycleController.reset"""

    @pytest.mark.asyncio
    async def test_reset_rebuilds_instance(self, controller, sample_routes, port_base):
        """Test reset yields a fresh instance with the original routes"""
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))
        old = controller.get("api")
        controller.add_route("api", RouteSpec(method=HTTPMethod.GET, path="/ping", handler=ping))

        # Act
        result = await controller.reset("api")

        # Assert
        assert result is True
        new = controller.get("api")
        assert new is not old
        assert old.state == ServerState.STOPPED
        assert port_base <= new.port < port_base + 10
        hello = await fetch(f"http://{LOOPBACK}:{new.port}/hello")
        added = await fetch(f"http://{LOOPBACK}:{new.port}/ping")
        assert hello.json() == {"message": "hello"}
        assert added.status_code == 404

    @pytest.mark.asyncio
    async def test_reset_returns_url(self, controller, sample_routes, port_base):
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))

        # Act
        result = await controller.reset("api", return_url="url")

        # Assert
        assert result == controller.url_for("api")

    @pytest.mark.asyncio
    async def test_reset_missing_name(self, controller):
        """Test reset of an absent name raises NotFoundFailure"""
        with pytest.raises(NotFoundFailure):
            await controller.reset("missing")

    @pytest.mark.asyncio
    async def test_reset_failure_leaves_name_absent(
        self, controller, sample_routes, port_base, monkeypatch
    ):
        """Test a failed re-create raises and does not restore the old instance"""
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))
        monkeypatch.setattr(
            controller.allocator,
            "allocate",
            AsyncMock(side_effect=OSError("no ports")),
        )

        # Act
        with pytest.raises(CreationFailure):
            await controller.reset("api")

        # Assert
        assert "api" not in controller.registry


class TestAddRoute:
    """Tests for LifecycleController.add_route"""

    @pytest.mark.asyncio
    async def test_add_route_to_running_instance(self, controller, sample_routes, port_base):
        """Test a route added at runtime is served without changing port"""
        # Arrange
        await controller.create(instance_config("api", sample_routes, port_base))
        url = controller.url_for("api")
        before = await fetch(f"{url}ping")

        # Act
        controller.add_route("api", {"method": "get", "path": "/ping", "handler": ping})

        # Assert
        after = await fetch(f"{url}ping")
        assert before.status_code == 404
        assert after.status_code == 200
        assert after.json() == {"message": "pong"}
        assert controller.get("api").port == port_base

    def test_add_route_missing_name(self, test_config):
        """Test add_route on an absent name raises NotFoundFailure"""
        # Arrange
        controller = LifecycleController(test_config)

        # Act / Assert
        with pytest.raises(NotFoundFailure):
            controller.add_route(
                "missing",
                RouteSpec(method=HTTPMethod.GET, path="/ping", handler=ping),
            )

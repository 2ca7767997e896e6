"""HostProvisioner — hands out container-engine endpoints.

``LOCAL`` leases point at the local daemon and need no teardown.  ``REMOTE``
leases are backed by a freshly created instance:

1. resolve the base image,
2. ensure the key pair and security group exist,
3. create the instance,
4. poll until it is running,
5. poll until its health checks pass,
6. probe the engine's ``/_ping`` endpoint with bounded retries.

If anything from step 3 onwards fails (including cancellation or the overall
deadline), the instance is terminated before the error propagates.
"""

from __future__ import annotations

import asyncio
import logging
import threading

import httpx

from repobox.config import RemoteHostSettings
from repobox.errors import ComputeAPIError, ProvisionError
from repobox.hosts.compute import ComputeAPI, InstanceSpec, docker_host_user_data
from repobox.models import HostLease, HostMode
from repobox.telemetry import ATTR_HOST_MODE, ATTR_INSTANCE_ID, get_tracer

logger = logging.getLogger(__name__)
_tracer = get_tracer(__name__)

_FAILED_STATES = frozenset({"shutting-down", "terminated", "stopping", "stopped"})
_SSH_PORT = 22


class HostProvisioner:
    """Acquire and release :class:`HostLease` objects."""

    def __init__(
        self,
        *,
        local_endpoint: str = "unix:///var/run/docker.sock",
        settings: RemoteHostSettings | None = None,
        compute: ComputeAPI | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._local_endpoint = local_endpoint
        self._settings = settings or RemoteHostSettings()
        self._compute = compute
        self._transport = transport
        self._active: dict[str, HostLease] = {}
        self._releasing: set[str] = set()
        self._lock = threading.Lock()

    @property
    def default_mode(self) -> HostMode:
        return HostMode.REMOTE if self._settings.enabled else HostMode.LOCAL

    def active_leases(self) -> list[HostLease]:
        with self._lock:
            return list(self._active.values())

    async def acquire(self, mode: HostMode | None = None) -> HostLease:
        """Return a lease for *mode* (the configured default when ``None``)."""
        mode = mode or self.default_mode
        if mode is HostMode.LOCAL:
            return HostLease(mode=HostMode.LOCAL, endpoint=self._local_endpoint)

        if self._compute is None:
            raise ProvisionError("No compute API configured for remote hosts", stage="acquire")

        with _tracer.start_as_current_span("repobox.provision") as span:
            span.set_attribute(ATTR_HOST_MODE, mode.value)
            try:
                lease = await asyncio.wait_for(
                    self._acquire_remote(),
                    timeout=self._settings.provision_timeout,
                )
            except TimeoutError:
                msg = f"Remote host not ready within {self._settings.provision_timeout}s"
                raise ProvisionError(msg, stage="deadline") from None
            if lease.remote_instance_id:
                span.set_attribute(ATTR_INSTANCE_ID, lease.remote_instance_id)
            return lease

    async def _acquire_remote(self) -> HostLease:
        assert self._compute is not None
        cfg = self._settings

        try:
            image_id = await self._compute.resolve_image()
            await self._compute.ensure_key_pair(cfg.key_name, cfg.key_path)
            group_id = await self._compute.ensure_security_group(
                cfg.security_group, [cfg.engine_port, _SSH_PORT]
            )
        except ComputeAPIError as exc:
            raise ProvisionError(str(exc), stage="prepare") from exc

        spec = InstanceSpec(
            image_id=image_id,
            instance_type=cfg.instance_type,
            key_name=cfg.key_name,
            security_group_id=group_id,
            subnet_id=cfg.subnet_id,
            user_data=docker_host_user_data(cfg.engine_port),
        )

        instance_id: str | None = None
        stage = "create"
        try:
            instance_id = await self._compute.create_instance(spec)
            logger.info("Created instance %s, waiting for it to run", instance_id)

            stage = "running-wait"
            public_ip = await self._wait_running(instance_id)

            stage = "health-wait"
            await self._wait_healthy(instance_id)

            stage = "connect-probe"
            endpoint = f"tcp://{public_ip}:{cfg.engine_port}"
            await self._probe(public_ip)
        except asyncio.CancelledError:
            await self._discard(instance_id)
            raise
        except ProvisionError:
            await self._discard(instance_id)
            raise
        except Exception as exc:
            await self._discard(instance_id)
            raise ProvisionError(str(exc), stage=stage) from exc

        lease = HostLease(mode=HostMode.REMOTE, endpoint=endpoint, remote_instance_id=instance_id)
        with self._lock:
            self._active[instance_id] = lease
        logger.info("Remote host %s ready at %s", instance_id, endpoint)
        return lease

    async def _wait_running(self, instance_id: str) -> str:
        """Poll until the instance is running with a public address."""
        assert self._compute is not None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.running_timeout
        while True:
            desc = await self._compute.describe_instance(instance_id)
            if desc.state == "running" and desc.public_ip:
                return desc.public_ip
            if desc.state in _FAILED_STATES:
                raise ProvisionError(f"Instance {instance_id} entered state {desc.state}", stage="running-wait")
            if loop.time() >= deadline:
                msg = f"Instance {instance_id} not running after {self._settings.running_timeout}s (state={desc.state})"
                raise ProvisionError(msg, stage="running-wait")
            logger.debug("Instance %s is %s, polling again", instance_id, desc.state)
            await asyncio.sleep(self._settings.poll_interval)

    async def _wait_healthy(self, instance_id: str) -> None:
        assert self._compute is not None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.health_timeout
        while not await self._compute.instance_status_ok(instance_id):
            if loop.time() >= deadline:
                await self._log_console(instance_id)
                msg = f"Instance {instance_id} health checks not ok after {self._settings.health_timeout}s"
                raise ProvisionError(msg, stage="health-wait")
            logger.debug("Instance %s health checks pending", instance_id)
            await asyncio.sleep(self._settings.poll_interval)

    async def _probe(self, host: str) -> None:
        """GET ``/_ping`` on the engine port until it answers ``OK``."""
        url = f"http://{host}:{self._settings.engine_port}/_ping"
        last_error = ""
        async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
            for attempt in range(1, self._settings.probe_attempts + 1):
                try:
                    response = await client.get(url)
                    if response.status_code == 200:
                        logger.debug("Engine at %s answered ping (attempt %d)", host, attempt)
                        return
                    last_error = f"HTTP {response.status_code}"
                except httpx.HTTPError as exc:
                    last_error = str(exc) or exc.__class__.__name__
                logger.debug("Engine ping %s failed (attempt %d): %s", url, attempt, last_error)
                if attempt < self._settings.probe_attempts:
                    await asyncio.sleep(self._settings.probe_interval)
        msg = f"Engine at {url} did not answer after {self._settings.probe_attempts} attempts: {last_error}"
        raise ProvisionError(msg, stage="connect-probe")

    async def _log_console(self, instance_id: str) -> None:
        assert self._compute is not None
        try:
            output = await self._compute.get_console_log(instance_id)
        except ComputeAPIError as exc:
            logger.warning("Could not fetch console log for %s: %s", instance_id, exc)
            return
        logger.warning("Console log of %s:\n%s", instance_id, output[-4000:])

    async def _discard(self, instance_id: str | None) -> None:
        """Terminate a half-provisioned instance; never raises."""
        if instance_id is None:
            return
        logger.warning("Terminating instance %s after failed provisioning", instance_id)
        assert self._compute is not None
        try:
            await self._compute.terminate_instance(instance_id)
        except Exception:
            logger.exception("Failed to terminate instance %s", instance_id)

    async def release(self, lease: HostLease | None) -> None:
        """Tear down *lease*.

        Local leases, unknown leases and leases that were already released
        are no-ops.

        Raises:
            ProvisionError: The remote instance could not be terminated.
        """
        if lease is None or lease.mode is HostMode.LOCAL or not lease.remote_instance_id:
            return
        instance_id = lease.remote_instance_id
        with self._lock:
            if instance_id not in self._active or instance_id in self._releasing:
                return
            self._releasing.add(instance_id)
        assert self._compute is not None
        try:
            await self._compute.terminate_instance(instance_id)
        except ComputeAPIError as exc:
            # The lease stays tracked so a later release can retry.
            raise ProvisionError(str(exc), stage="release") from exc
        else:
            with self._lock:
                self._active.pop(instance_id, None)
        finally:
            with self._lock:
                self._releasing.discard(instance_id)

    async def release_all(self) -> None:
        """Release every outstanding remote lease, logging failures."""
        for lease in self.active_leases():
            try:
                await self.release(lease)
            except ProvisionError:
                logger.exception("Failed to release host %s", lease.remote_instance_id)

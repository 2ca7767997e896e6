"""Remote compute API — the protocol and an AWS EC2 implementation.

:class:`AwsCliCompute` uses the ``aws`` CLI via subprocess, mirroring how
:class:`~repobox.engine.DockerEngine` drives ``docker``; every call asks for
JSON output and failures are mapped to
:class:`~repobox.errors.ComputeAPIError` with the AWS error code.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from repobox.config import RemoteHostSettings
from repobox.errors import ComputeAPIError

logger = logging.getLogger(__name__)

_ERROR_CODE = re.compile(r"An error occurred \((?P<code>[\w.]+)\)")

DOCKER_HOST_USER_DATA = """#!/bin/bash
echo "Starting user data script" > /var/log/user-data-start.log

while fuser /var/run/yum.pid >/dev/null 2>&1; do
    echo "Waiting for yum lock..." >> /var/log/user-data-start.log
    sleep 3
done

yum update -y >> /var/log/user-data-start.log 2>&1
amazon-linux-extras install docker -y >> /var/log/user-data-start.log 2>&1
yum install -y docker >> /var/log/user-data-start.log 2>&1
usermod -aG docker ec2-user >> /var/log/user-data-start.log 2>&1

mkdir -p /etc/docker
cat > /etc/docker/daemon.json << EOF
{
    "hosts": ["tcp://0.0.0.0:{port}", "unix:///var/run/docker.sock"]
}
EOF

mkdir -p /etc/systemd/system/docker.service.d
cat > /etc/systemd/system/docker.service.d/override.conf << EOF
[Service]
ExecStart=
ExecStart=/usr/bin/dockerd
EOF

systemctl daemon-reload
systemctl enable docker >> /var/log/user-data-start.log 2>&1
systemctl restart docker >> /var/log/user-data-start.log 2>&1

echo "User data script completed" >> /var/log/user-data-start.log
"""


def docker_host_user_data(port: int) -> str:
    """Bootstrap script that installs Docker and exposes it on TCP *port*."""
    return DOCKER_HOST_USER_DATA.replace("{port}", str(port))


class InstanceSpec(BaseModel):
    """Parameters for a single instance launch."""

    image_id: str
    instance_type: str = "t3.micro"
    key_name: str | None = None
    security_group_id: str | None = None
    subnet_id: str | None = None
    user_data: str = ""
    name: str = "Docker-Sandbox"


class InstanceDescription(BaseModel):
    """The parts of an instance description the provisioner needs."""

    instance_id: str
    state: str = Field(..., description="pending, running, shutting-down, terminated, ...")
    public_ip: str | None = None


@runtime_checkable
class ComputeAPI(Protocol):
    """The remote compute operations needed to bring up an engine host."""

    async def resolve_image(self) -> str:
        """Return the base image id for new hosts."""
        ...

    async def ensure_key_pair(self, name: str, key_path: Path) -> None:
        """Create the named key pair unless it exists (idempotent)."""
        ...

    async def ensure_security_group(self, name: str, ports: list[int]) -> str:
        """Create or find the named group, open *ports*, return its id."""
        ...

    async def create_instance(self, spec: InstanceSpec) -> str:
        ...

    async def describe_instance(self, instance_id: str) -> InstanceDescription:
        ...

    async def instance_status_ok(self, instance_id: str) -> bool:
        """``True`` once the instance and system health checks pass."""
        ...

    async def terminate_instance(self, instance_id: str) -> None:
        ...

    async def get_console_log(self, instance_id: str) -> str:
        ...


class AwsCliCompute:
    """:class:`ComputeAPI` backed by ``aws ec2`` commands."""

    def __init__(self, settings: RemoteHostSettings | None = None) -> None:
        self._settings = settings or RemoteHostSettings()

    async def resolve_image(self) -> str:
        if self._settings.image_id:
            return self._settings.image_id
        data = await self._ec2(
            "describe-images",
            "--owners", self._settings.image_owner,
            "--filters",
            f"Name=name,Values={self._settings.image_name_filter}",
            "Name=state,Values=available",
        )
        images = sorted(data.get("Images", []), key=lambda img: img.get("CreationDate", ""))
        if not images:
            raise ComputeAPIError(f"No image matches {self._settings.image_name_filter}")
        image_id = images[-1]["ImageId"]
        logger.info("Resolved host image %s (%s)", image_id, images[-1].get("Name", "?"))
        return image_id

    async def ensure_key_pair(self, name: str, key_path: Path) -> None:
        try:
            await self._ec2("describe-key-pairs", "--key-names", name)
            logger.debug("Using existing key pair %s", name)
            if not key_path.exists():
                logger.warning("Private key file %s not found for key pair %s", key_path, name)
            return
        except ComputeAPIError as exc:
            if exc.code != "InvalidKeyPair.NotFound":
                raise

        try:
            data = await self._ec2("create-key-pair", "--key-name", name)
        except ComputeAPIError as exc:
            if exc.code == "InvalidKeyPair.Duplicate":
                return
            raise

        material = data.get("KeyMaterial", "")
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(material)
        logger.info("Created key pair %s, private key saved to %s", name, key_path)

    async def ensure_security_group(self, name: str, ports: list[int]) -> str:
        try:
            data = await self._ec2(
                "create-security-group",
                "--group-name", name,
                "--description", "Security group for Docker sandbox",
            )
            group_id = data["GroupId"]
        except ComputeAPIError as exc:
            if exc.code != "InvalidGroup.Duplicate":
                raise
            found = await self._ec2(
                "describe-security-groups",
                "--filters", f"Name=group-name,Values={name}",
            )
            groups = found.get("SecurityGroups", [])
            if not groups:
                raise ComputeAPIError(f"Security group {name} exists but cannot be found") from exc
            group_id = groups[0]["GroupId"]

        permissions = [
            {
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
                "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
            }
            for port in ports
        ]
        try:
            await self._ec2(
                "authorize-security-group-ingress",
                "--group-id", group_id,
                "--ip-permissions", json.dumps(permissions),
            )
        except ComputeAPIError as exc:
            if exc.code != "InvalidPermission.Duplicate":
                raise
            logger.debug("Ingress rules for %s already exist", name)
        return group_id

    async def create_instance(self, spec: InstanceSpec) -> str:
        args = [
            "run-instances",
            "--image-id", spec.image_id,
            "--instance-type", spec.instance_type,
            "--count", "1",
            "--tag-specifications",
            f"ResourceType=instance,Tags=[{{Key=Name,Value={spec.name}}}]",
        ]
        if spec.user_data:
            args.extend(["--user-data", spec.user_data])
        if spec.key_name:
            args.extend(["--key-name", spec.key_name])
        if spec.security_group_id:
            args.extend(["--security-group-ids", spec.security_group_id])
        if spec.subnet_id:
            args.extend(["--subnet-id", spec.subnet_id])

        data = await self._ec2(*args)
        instances = data.get("Instances", [])
        if not instances:
            raise ComputeAPIError("run-instances returned no instance")
        return instances[0]["InstanceId"]

    async def describe_instance(self, instance_id: str) -> InstanceDescription:
        data = await self._ec2("describe-instances", "--instance-ids", instance_id)
        for reservation in data.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return InstanceDescription(
                    instance_id=instance_id,
                    state=instance.get("State", {}).get("Name", "unknown"),
                    public_ip=instance.get("PublicIpAddress"),
                )
        raise ComputeAPIError(f"Instance not found: {instance_id}")

    async def instance_status_ok(self, instance_id: str) -> bool:
        data = await self._ec2("describe-instance-status", "--instance-ids", instance_id)
        statuses = data.get("InstanceStatuses", [])
        if not statuses:
            return False
        status = statuses[0]
        return (
            status.get("InstanceStatus", {}).get("Status") == "ok"
            and status.get("SystemStatus", {}).get("Status") == "ok"
        )

    async def terminate_instance(self, instance_id: str) -> None:
        await self._ec2("terminate-instances", "--instance-ids", instance_id)
        logger.info("Terminated instance %s", instance_id)

    async def get_console_log(self, instance_id: str) -> str:
        data = await self._ec2("get-console-output", "--instance-id", instance_id)
        return data.get("Output") or ""

    async def _ec2(self, *args: str) -> dict[str, Any]:
        """Run ``aws ec2 <args> --output json`` and parse the result."""
        cmd = [self._settings.aws_binary, "ec2", *args, "--output", "json"]
        if self._settings.region:
            cmd.extend(["--region", self._settings.region])
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_bytes, stderr_bytes = await proc.communicate()
        except OSError as exc:
            raise ComputeAPIError(f"Failed to run aws: {exc}") from exc

        if proc.returncode != 0:
            stderr = stderr_bytes.decode(errors="replace").strip()
            match = _ERROR_CODE.search(stderr)
            raise ComputeAPIError(stderr, code=match.group("code") if match else None)

        stdout = stdout_bytes.decode(errors="replace").strip()
        if not stdout:
            return {}
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ComputeAPIError(f"Unparseable aws output: {stdout[:200]}") from exc

"""Host provisioning — local engine or an ephemeral remote host."""

from repobox.hosts.compute import AwsCliCompute, ComputeAPI, InstanceDescription, InstanceSpec
from repobox.hosts.provisioner import HostProvisioner

__all__ = [
    "AwsCliCompute",
    "ComputeAPI",
    "HostProvisioner",
    "InstanceDescription",
    "InstanceSpec",
]

"""Hypervisor driver interface used by the provisioning orchestrator.

New hypervisors are supported by adding a ``Driver`` implementation; the
orchestrator never branches on the concrete driver. Every operation is
synchronous and raises ``DriverError`` on failure.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from vps_manager.models import InstanceInfo, VMSpec


class Driver(ABC):
    name = "abstract"

    @abstractmethod
    def create_disk(self, instance: str, base_image: Path, size: str) -> Path:
        """Create the copy-on-write disk for ``instance`` backed by ``base_image``."""

    @abstractmethod
    def create_vm(self, spec: VMSpec) -> None:
        """Write the seed artifact, define the instance and start it."""

    @abstractmethod
    def delete_vm(self, instance_id: str) -> None:
        """Best-effort removal of the instance, its disk and its seed artifact.

        Deleting an id that no longer exists is not an error.
        """

    @abstractmethod
    def start_vm(self, instance_id: str) -> None: ...

    @abstractmethod
    def stop_vm(self, instance_id: str) -> None: ...

    @abstractmethod
    def reboot(self, instance_id: str) -> None: ...

    @abstractmethod
    def list_vms(self) -> List[str]: ...

    @abstractmethod
    def get_vm_info(self, instance_id: str) -> InstanceInfo: ...

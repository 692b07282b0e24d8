"""Data models for vps-manager."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional

from vps_manager.constants import IMAGE_STATUSES, STATUS_PENDING


@dataclass(frozen=True)
class CatalogEntry:
    display_name: str
    distro: str
    version: str
    artifact_filename: str
    download_url: str
    is_lts: bool = False

    @property
    def key(self) -> tuple:
        return (self.distro, self.version)

    @property
    def logical_name(self) -> str:
        return f"{self.distro}-{self.version}".lower()

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "CatalogEntry":
        return cls(
            display_name=str(data["display_name"]),
            distro=str(data["distro"]),
            version=str(data["version"]),
            artifact_filename=str(data["artifact_filename"]),
            download_url=str(data["download_url"]),
            is_lts=bool(data.get("is_lts", False)),
        )


@dataclass
class RegistryEntry:
    name: str
    url: str
    local_path: Path
    checksum: str = ""
    status: str = STATUS_PENDING

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "url": self.url,
            "local_path": str(self.local_path),
            "checksum": self.checksum,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "RegistryEntry":
        status = data.get("status", STATUS_PENDING)
        if status not in IMAGE_STATUSES:
            status = STATUS_PENDING
        return cls(
            name=data["name"],
            url=data["url"],
            local_path=Path(data["local_path"]),
            checksum=data.get("checksum") or "",
            status=status,
        )


@dataclass(frozen=True)
class Plan:
    name: str
    cpus: int
    memory_mb: int
    disk: str  # qemu-img size, e.g. "20G"


@dataclass
class Credentials:
    root_password: str
    username: Optional[str] = None  # None -> root-only instance
    user_password: Optional[str] = None
    allow_root_login: bool = False


@dataclass
class ProvisionRequest:
    name: str
    image: str
    plan: str
    credentials: Credentials
    bridge: Optional[str] = None  # None -> default NAT network


@dataclass
class InstanceInfo:
    id: str
    name: str
    status: str
    address: Optional[str] = None


@dataclass
class VMSpec:
    """Everything the driver needs to define and boot one instance."""

    name: str
    disk_path: Path
    seed_payload: bytes
    meta_data: bytes
    cpus: int
    memory_mb: int
    bridge: Optional[str] = None

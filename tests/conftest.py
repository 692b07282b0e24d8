"""Shared test fixtures: fake HTTP sessions, probes, downloaders and drivers."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
import requests

from vps_manager.config import load_plans
from vps_manager.driver import Driver
from vps_manager.exceptions import DriverError
from vps_manager.models import CatalogEntry, Credentials, InstanceInfo, VMSpec
from vps_manager.probes import MirrorProbe
from vps_manager.registry import ImageRegistry


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", chunks=(), headers=None) -> None:
        self.status_code = status_code
        self.text = text
        self.reason = "OK" if status_code < 400 else "Error"
        self.headers = headers or {}
        self._chunks = list(chunks)
        self.closed = False

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} {self.reason}")

    def iter_content(self, chunk_size: int = 1):
        for chunk in self._chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Routes (method, url) to canned responses; anything else is a 404."""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], object]] = None) -> None:
        self.routes = dict(routes or {})
        self.calls: List[Tuple[str, str]] = []
        self.closed = False

    def _respond(self, method: str, url: str) -> FakeResponse:
        self.calls.append((method, url))
        result = self.routes.get((method, url), FakeResponse(404))
        if isinstance(result, Exception):
            raise result
        return result

    def head(self, url: str, **kwargs) -> FakeResponse:
        return self._respond("HEAD", url)

    def get(self, url: str, **kwargs) -> FakeResponse:
        return self._respond("GET", url)

    def close(self) -> None:
        self.closed = True


class StaticProbe(MirrorProbe):
    """Probe that returns a fixed entry or raises a fixed error."""

    def __init__(self, entry: Optional[CatalogEntry] = None, error: Optional[Exception] = None) -> None:
        super().__init__(entry.distro if entry else "broken", entry.version if entry else None)
        self.entry = entry
        self.error = error
        self.calls = 0

    def discover(self, session):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.entry


class FakeDownloader:
    def __init__(self, payload: bytes = b"qcow2-bytes", error: Optional[Exception] = None) -> None:
        self.payload = payload
        self.error = error
        self.calls: List[Tuple[str, Path]] = []

    def __call__(self, url: str, destination: Path) -> None:
        self.calls.append((url, destination))
        if self.error is not None:
            raise self.error
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.payload)


class FakeDriver(Driver):
    """Records every call; ``fail`` maps an operation name to the error it raises."""

    name = "fake"

    def __init__(self, disk_dir: Path) -> None:
        self.disk_dir = disk_dir
        self.calls: List[Tuple[str, object]] = []
        self.fail: Dict[str, Exception] = {}
        self.instances: Dict[str, InstanceInfo] = {}

    def _record(self, operation: str, arg: object) -> None:
        self.calls.append((operation, arg))
        if operation in self.fail:
            raise self.fail[operation]

    def create_disk(self, instance: str, base_image: Path, size: str) -> Path:
        self._record("create_disk", (instance, base_image, size))
        return self.disk_dir / f"{instance}.qcow2"

    def create_vm(self, spec: VMSpec) -> None:
        self._record("create_vm", spec)
        self.instances[spec.name] = InstanceInfo(id=spec.name, name=spec.name, status="running")

    def delete_vm(self, instance_id: str) -> None:
        self._record("delete_vm", instance_id)
        self.instances.pop(instance_id, None)

    def start_vm(self, instance_id: str) -> None:
        self._record("start_vm", instance_id)

    def stop_vm(self, instance_id: str) -> None:
        self._record("stop_vm", instance_id)

    def reboot(self, instance_id: str) -> None:
        self._record("reboot", instance_id)

    def list_vms(self) -> List[str]:
        return sorted(self.instances)

    def get_vm_info(self, instance_id: str) -> InstanceInfo:
        info = self.instances[instance_id]
        if info.status == "broken":
            raise DriverError("domstate", instance_id, "connection reset")
        return info


def make_entry(distro: str = "ubuntu", version: str = "24.04", display_name: Optional[str] = None,
               url: Optional[str] = None) -> CatalogEntry:
    url = url or f"https://mirror.example/{distro}/{version}/{distro}-{version}.qcow2"
    return CatalogEntry(
        display_name=display_name or f"{distro.capitalize()} {version}",
        distro=distro,
        version=version,
        artifact_filename=url.rsplit("/", 1)[-1],
        download_url=url,
    )


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def static_probe():
    return StaticProbe


@pytest.fixture
def entry_factory():
    return make_entry


@pytest.fixture
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture
def registry(tmp_path, downloader) -> ImageRegistry:
    return ImageRegistry(tmp_path / "images.json", tmp_path / "images", downloader=downloader)


@pytest.fixture
def driver(tmp_path) -> FakeDriver:
    return FakeDriver(tmp_path / "vms")


@pytest.fixture
def plans():
    table, _ = load_plans()
    return table


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(root_password="rootpw", username="alice", user_password="alicepw")


# Every environment variable load_settings() reads, cleared for a clean slate.
_SETTINGS_ENV_VARS = [
    "VPS_DATA_DIR",
    "VPS_STATE_DIR",
    "CATALOG_TTL_HOURS",
    "PROBE_TIMEOUT",
    "VPS_PLANS_FILE",
    "LIBVIRT_URI",
    "DEFAULT_NETWORK",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear settings variables and point the data and state dirs at tmp_path."""
    for key in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("VPS_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("VPS_STATE_DIR", str(tmp_path / "state"))
    return tmp_path

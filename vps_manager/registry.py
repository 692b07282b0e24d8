"""Durable logical-name -> image artifact registry with on-demand download."""

from __future__ import annotations

import json
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List, Optional

from vps_manager.constants import STATUS_DOWNLOADING, STATUS_PENDING, STATUS_READY
from vps_manager.exceptions import ConfigError, DownloadFailedError, NotRegisteredError
from vps_manager.models import CatalogEntry, RegistryEntry
from vps_manager.utils import (
    ReadWriteLock,
    download_file,
    ensure_directory,
    has_controlling_tty,
    log,
    safe_name,
)

Downloader = Callable[[str, Path], None]


def _default_downloader(url: str, destination: Path) -> None:
    download_file(url, destination, label="Pulling image", show_progress=has_controlling_tty())


class ImageRegistry:
    """Maps logical image names to cached local artifacts.

    The whole map is rewritten to ``registry_path`` after every mutation.
    Only one download per logical name runs at a time; a second caller for the
    same name waits and then finds the artifact already in place.
    """

    def __init__(
        self,
        registry_path: Path,
        cache_dir: Path,
        downloader: Optional[Downloader] = None,
    ) -> None:
        self.registry_path = registry_path
        self.cache_dir = cache_dir
        self._download = downloader or _default_downloader
        self._lock = ReadWriteLock()
        self._images: Dict[str, RegistryEntry] = {}
        self._name_locks: Dict[str, threading.Lock] = {}
        self._name_locks_guard = threading.Lock()
        ensure_directory(self.cache_dir)
        self._load()

    def local_path_for(self, name: str) -> Path:
        return self.cache_dir / f"{safe_name(name)}.qcow2"

    def register(self, name: str, url: str, checksum: str = "") -> RegistryEntry:
        name = name.strip()
        if not name:
            raise ConfigError("Logical image name must not be empty")
        if not url.strip():
            raise ConfigError(f"Image '{name}' needs a download URL")
        entry = RegistryEntry(
            name=name,
            url=url.strip(),
            local_path=self.local_path_for(name),
            checksum=checksum or "",
            status=STATUS_PENDING,
        )
        with self._lock.write_locked():
            self._images[name] = entry
            self._save()
        log("INFO", f"Registered image '{name}' -> {entry.url}")
        return replace(entry)

    def get(self, name: str) -> Optional[RegistryEntry]:
        with self._lock.read_locked():
            entry = self._images.get(name)
            return replace(entry) if entry else None

    def list(self) -> List[RegistryEntry]:
        with self._lock.read_locked():
            return [replace(self._images[name]) for name in sorted(self._images)]

    def resolve(self, name: str) -> RegistryEntry:
        """Return the entry for ``name``, downloading its artifact if missing."""
        entry = self.get(name)
        if entry is None:
            raise NotRegisteredError(name)
        if entry.local_path.exists():
            return entry

        with self._lock_for(name):
            while True:
                # Another caller may have finished the download while we waited.
                entry = self.get(name)
                if entry is None:
                    raise NotRegisteredError(name)
                if entry.local_path.exists():
                    return entry
                ready = self._fetch(entry)
                if ready is not None:
                    return ready

    def _staging_path(self, entry: RegistryEntry) -> Path:
        return entry.local_path.with_name(f".{entry.local_path.name}.incoming")

    def _fetch(self, entry: RegistryEntry) -> Optional[RegistryEntry]:
        """Download ``entry``; None means it was re-registered meanwhile."""
        prior_status = entry.status
        staging = self._staging_path(entry)
        self._set_status(entry.name, entry.url, STATUS_DOWNLOADING)
        log("INFO", f"Pulling image '{entry.name}' from {entry.url}")
        try:
            self._download(entry.url, staging)
        except Exception as exc:
            staging.unlink(missing_ok=True)
            self._set_status(entry.name, entry.url, prior_status)
            if isinstance(exc, DownloadFailedError):
                raise
            raise DownloadFailedError(f"Failed to download image '{entry.name}': {exc}") from exc

        if not staging.exists():
            self._set_status(entry.name, entry.url, prior_status)
            raise DownloadFailedError(f"Download of '{entry.name}' produced no file at {staging}")

        if not self._publish(entry, staging):
            log("WARN", f"Image '{entry.name}' was re-registered during download; discarding {entry.url}")
            return None
        log("SUCCESS", f"Image ready: {entry.local_path}")
        return self.get(entry.name) or replace(entry, status=STATUS_READY)

    def _publish(self, entry: RegistryEntry, staging: Path) -> bool:
        """Move ``staging`` into place only if the entry still points at the downloaded URL."""
        with self._lock.write_locked():
            current = self._images.get(entry.name)
            if current is None or current.url != entry.url:
                staging.unlink(missing_ok=True)
                return False
            staging.replace(current.local_path)
            current.status = STATUS_READY
            self._save()
            return True

    def _set_status(self, name: str, url: str, status: str) -> bool:
        """Update status only if the entry still points at ``url``."""
        with self._lock.write_locked():
            current = self._images.get(name)
            if current is None or current.url != url:
                return False
            current.status = status
            self._save()
            return True

    def _lock_for(self, name: str) -> threading.Lock:
        with self._name_locks_guard:
            return self._name_locks.setdefault(name, threading.Lock())

    def _load(self) -> None:
        if not self.registry_path.exists():
            return
        try:
            raw = json.loads(self.registry_path.read_text())
            images = {name: RegistryEntry.from_dict(data) for name, data in raw.items()}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            log("WARN", f"Ignoring unreadable image registry {self.registry_path}: {exc}")
            return
        self._images = images

    def _save(self) -> None:
        """Rewrite the registry file; caller holds the write lock."""
        ensure_directory(self.registry_path.parent)
        payload = json.dumps(
            {name: entry.to_dict() for name, entry in sorted(self._images.items())},
            indent=2,
        )
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=self.registry_path.parent, prefix=".images.", suffix=".tmp"
        ) as tmp:
            tmp.write(payload)
        Path(tmp.name).replace(self.registry_path)


def register_catalog_entry(registry: ImageRegistry, entry: CatalogEntry) -> RegistryEntry:
    """Register a catalog selection under ``<distro>-<version>``."""
    return registry.register(entry.logical_name, entry.download_url)

"""Catalog of downloadable images, rebuilt from concurrent mirror probes."""

from __future__ import annotations

import json
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import requests

from vps_manager.constants import CATALOG_TTL_HOURS, USER_AGENT
from vps_manager.models import CatalogEntry
from vps_manager.probes import MirrorProbe
from vps_manager.utils import ensure_directory, log


def _default_session() -> requests.Session:
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    return session


def dedupe_and_sort(entries: Iterable[CatalogEntry]) -> List[CatalogEntry]:
    """Sort by display name; keep the first entry for each distro+version."""
    ordered = sorted(entries, key=lambda e: (e.display_name, e.download_url))
    seen = set()
    result: List[CatalogEntry] = []
    for entry in ordered:
        if entry.key in seen:
            log("DEBUG", f"Dropping duplicate catalog entry {entry.distro} {entry.version}")
            continue
        seen.add(entry.key)
        result.append(entry)
    return result


class Catalog:
    """Owns the published image list and its on-disk cache."""

    def __init__(
        self,
        probes: List[MirrorProbe],
        cache_path: Path,
        ttl_hours: float = CATALOG_TTL_HOURS,
        session_factory: Callable[[], requests.Session] = _default_session,
    ) -> None:
        self.probes = list(probes)
        self.cache_path = cache_path
        self.ttl_seconds = ttl_hours * 3600
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._entries: List[CatalogEntry] = []

    @property
    def entries(self) -> List[CatalogEntry]:
        with self._lock:
            return list(self._entries)

    def refresh(self) -> List[CatalogEntry]:
        """Run every probe concurrently and publish the combined result."""
        log("INFO", f"Probing {len(self.probes)} mirrors for the latest images...")
        found: List[CatalogEntry] = []
        found_lock = threading.Lock()

        def run_probe(probe: MirrorProbe) -> None:
            session = self._session_factory()
            try:
                entry = probe.probe(session)
            finally:
                session.close()
            if entry is not None:
                with found_lock:
                    found.append(entry)

        if self.probes:
            # One worker per probe; leaving the executor waits for all of them.
            with ThreadPoolExecutor(max_workers=len(self.probes), thread_name_prefix="probe") as executor:
                for future in [executor.submit(run_probe, probe) for probe in self.probes]:
                    exc = future.exception()
                    if exc is not None:
                        log("WARN", f"Probe worker crashed: {exc}")

        published = dedupe_and_sort(found)
        with self._lock:
            self._entries = published
            self._save(published)
        if published:
            log("SUCCESS", f"Catalog updated with {len(published)} images ({self.cache_path})")
        else:
            log("WARN", "No mirrors answered; catalog is empty")
        return list(published)

    def load(self) -> List[CatalogEntry]:
        """Serve the disk cache while fresh, otherwise refresh synchronously."""
        if self.is_fresh():
            cached = self._read_cache()
            if cached is not None:
                with self._lock:
                    self._entries = cached
                return list(cached)
        return self.refresh()

    def is_fresh(self) -> bool:
        try:
            mtime = self.cache_path.stat().st_mtime
        except OSError:
            return False
        return (time.time() - mtime) < self.ttl_seconds

    def find(self, distro: str, version: str) -> Optional[CatalogEntry]:
        distro_l = distro.lower()
        for entry in self.entries:
            if entry.distro.lower() == distro_l and entry.version == version:
                return entry
        return None

    def _read_cache(self) -> Optional[List[CatalogEntry]]:
        try:
            raw = json.loads(self.cache_path.read_text())
            return [CatalogEntry.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log("WARN", f"Ignoring unreadable catalog cache {self.cache_path}: {exc}")
            return None

    def _save(self, entries: List[CatalogEntry]) -> None:
        ensure_directory(self.cache_path.parent)
        payload = json.dumps([entry.to_dict() for entry in entries], indent=2)
        with tempfile.NamedTemporaryFile(
            "w", delete=False, dir=self.cache_path.parent, prefix=".catalog.", suffix=".tmp"
        ) as tmp:
            tmp.write(payload)
        Path(tmp.name).replace(self.cache_path)

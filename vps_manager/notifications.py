"""Image release notifications: register now, download in the background."""

from __future__ import annotations

import threading
from typing import Dict, Tuple

from vps_manager.exceptions import ConfigError, ManagerError
from vps_manager.registry import ImageRegistry
from vps_manager.utils import log


def logical_name_from_payload(payload: Dict[str, object]) -> str:
    """``{distro, version, url}`` -> 'distro-version'; ``{id, url, format}`` -> id."""
    image_id = str(payload.get("id") or "").strip()
    if image_id:
        return image_id
    distro = str(payload.get("distro") or "").strip()
    version = str(payload.get("version") or "").strip()
    if not distro or not version:
        raise ConfigError("Notification needs either 'id' or both 'distro' and 'version'")
    return f"{distro}-{version}".lower()


def _resolve_in_background(registry: ImageRegistry, name: str) -> None:
    try:
        entry = registry.resolve(name)
    except ManagerError as exc:
        log("ERROR", f"Background pull of '{name}' failed: {exc}")
        return
    log("SUCCESS", f"Background pull of '{name}' finished: {entry.local_path}")


def handle_release(registry: ImageRegistry, payload: Dict[str, object]) -> Tuple[str, threading.Thread]:
    """Register the announced image and start resolving it without waiting.

    Returns the logical name and the started worker thread so callers can
    join it when they need to (tests, shutdown).
    """
    url = str(payload.get("url") or "").strip()
    if not url:
        raise ConfigError("Notification is missing 'url'")
    name = logical_name_from_payload(payload)
    image_format = str(payload.get("format") or "").strip().lower()
    if image_format and image_format != "qcow2":
        log("WARN", f"Image '{name}' announced as {image_format}; it is cached as qcow2 as-is")

    log("INFO", f"Release notification for '{name}'")
    registry.register(name, url, str(payload.get("checksum") or ""))
    worker = threading.Thread(
        target=_resolve_in_background,
        args=(registry, name),
        name=f"pull-{name}",
        daemon=True,
    )
    worker.start()
    return name, worker

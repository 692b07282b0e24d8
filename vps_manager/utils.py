"""Utility functions for vps-manager."""

from __future__ import annotations

import hashlib
import os
import subprocess
import sys
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

import requests

from vps_manager.constants import (
    _LOG_VERBOSE,
    _UNSAFE_NAME_CHARS_RE,
    DISK_SIZE_RE,
    DOWNLOAD_CHUNK_SIZE,
    USER_AGENT,
)
from vps_manager.exceptions import ConfigError, DownloadFailedError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with a colour per level."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigError(
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def safe_name(name: str) -> str:
    """Map a logical name to a collision-free file stem.

    The digest is taken over the original name, so two names that sanitise to
    the same text still get different stems.
    """
    cleaned = _UNSAFE_NAME_CHARS_RE.sub("_", name).strip("._") or "image"
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:12]
    return f"{cleaned}-{digest}"


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    octets[3] = octets[3] | 0x02  # ensure locally administered bit
    octets[3] = octets[3] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def _print_progress(downloaded: int, total_bytes: Optional[int], start_time: float) -> None:
    elapsed = time.time() - start_time
    speed = downloaded / elapsed if elapsed > 0 else 0
    downloaded_mb = downloaded / (1024 * 1024)
    if total_bytes:
        total_mb = total_bytes / (1024 * 1024)
        pct = downloaded * 100 / total_bytes
        bar_len = 30
        filled = int(bar_len * downloaded / total_bytes)
        bar = "#" * filled + "-" * (bar_len - filled)
        print(
            f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
            f"({speed / (1024 * 1024):.1f} MiB/s)",
            end="", flush=True,
        )
    else:
        print(
            f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
            end="", flush=True,
        )


def download_file(
    url: str,
    destination: Path,
    label: str = "Downloading",
    session: Optional[requests.Session] = None,
    timeout: float = 60,
    show_progress: bool = False,
) -> None:
    """Stream ``url`` into ``destination``.

    Data is written to a temporary file next to the destination and moved into
    place only after the transfer completed, so a failed download never leaves
    a partial artifact at ``destination``.
    """
    log("INFO", f"{label}: {url}")
    http = session or requests.Session()
    try:
        response = http.get(url, stream=True, timeout=timeout, headers={"User-Agent": USER_AGENT})
    except requests.RequestException as exc:
        raise DownloadFailedError(f"Failed to download {url}: {exc}") from exc

    try:
        if response.status_code != 200:
            raise DownloadFailedError(
                f"HTTP error downloading {url}: {response.status_code} {response.reason}"
            )
        total = response.headers.get("Content-Length")
        total_bytes = int(total) if total and str(total).isdigit() else None
        downloaded = 0
        start_time = time.time()

        ensure_directory(destination.parent)
        with tempfile.NamedTemporaryFile(
            delete=False, dir=destination.parent, prefix=f".{destination.name}.", suffix=".part"
        ) as tmp:
            tmp_path = Path(tmp.name)
            try:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    tmp.write(chunk)
                    downloaded += len(chunk)
                    if show_progress:
                        _print_progress(downloaded, total_bytes, start_time)
            except (requests.RequestException, OSError) as exc:
                tmp.close()
                tmp_path.unlink(missing_ok=True)
                raise DownloadFailedError(f"Transfer of {url} interrupted: {exc}") from exc
        if show_progress:
            print(flush=True)
        if total_bytes is not None and downloaded != total_bytes:
            tmp_path.unlink(missing_ok=True)
            raise DownloadFailedError(
                f"Transfer of {url} incomplete: got {downloaded} of {total_bytes} bytes"
            )
        tmp_path.replace(destination)
    finally:
        response.close()

    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()

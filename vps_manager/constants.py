"""Global constants and path configuration for vps-manager."""

from __future__ import annotations

import os
import re
from pathlib import Path

# VPS_DATA_DIR holds everything that belongs to provisioned instances:
# the image cache, the registry file, differential disks and seed ISOs.
DATA_DIR = Path(os.environ.get("VPS_DATA_DIR", "/var/lib/vps-manager"))

# Per-user state (catalog cache) lives outside the data dir.
STATE_DIR = Path(os.environ.get("VPS_STATE_DIR", str(Path.home() / ".vps-manager")))
CATALOG_CACHE_NAME = "catalog.json"

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
DEFAULT_NETWORK = "default"

CATALOG_TTL_HOURS = 24
PROBE_TIMEOUT = 5
PROBE_TIMEOUT_MAX = 9
USER_AGENT = "vps-manager/1.0"
DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
INSTANCE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")
_UNSAFE_NAME_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")

# Image status values stored in the registry file.
STATUS_PENDING = "PENDING"
STATUS_DOWNLOADING = "DOWNLOADING"
STATUS_READY = "READY"
STATUS_ERROR = "ERROR"
IMAGE_STATUSES = (STATUS_PENDING, STATUS_DOWNLOADING, STATUS_READY, STATUS_ERROR)

DEFAULT_PLAN_NAME = "Starter"
DEFAULT_PLANS = {
    "Starter": {"cpus": 1, "memory_mb": 2048, "disk": "10G"},
    "Professional": {"cpus": 2, "memory_mb": 4096, "disk": "20G"},
    "Production": {"cpus": 4, "memory_mb": 8192, "disk": "40G"},
    "Beast": {"cpus": 8, "memory_mb": 16384, "disk": "80G"},
}

# Orchestrator stage names, reported in StageFailure.
STAGE_IMAGE = "image"
STAGE_DISK = "disk"
STAGE_CONFIGURATION = "configuration"
STAGE_LAUNCH = "launch"

LIFECYCLE_ACTIONS = ("start", "stop", "reboot", "delete")


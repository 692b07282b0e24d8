"""Configuration loading and environment variable parsing for vps-manager."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vps_manager.constants import (
    CATALOG_CACHE_NAME,
    CATALOG_TTL_HOURS,
    DATA_DIR,
    DEFAULT_NETWORK,
    DEFAULT_PLAN_NAME,
    DEFAULT_PLANS,
    LIBVIRT_URI,
    PROBE_TIMEOUT,
    PROBE_TIMEOUT_MAX,
    STATE_DIR,
)
from vps_manager.exceptions import ConfigError
from vps_manager.models import Plan
from vps_manager.utils import get_env, parse_int_env, validate_disk_size


@dataclass
class Settings:
    data_dir: Path
    state_dir: Path
    catalog_ttl_hours: int
    probe_timeout: int
    libvirt_uri: str
    default_network: str
    plans_file: Optional[Path] = None

    @property
    def image_cache_dir(self) -> Path:
        return self.data_dir / "images"

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "images.json"

    @property
    def disk_dir(self) -> Path:
        return self.data_dir / "vms"

    @property
    def seed_dir(self) -> Path:
        return self.data_dir / "configs"

    @property
    def catalog_cache_path(self) -> Path:
        return self.state_dir / CATALOG_CACHE_NAME


def load_settings() -> Settings:
    data_dir = Path(get_env("VPS_DATA_DIR") or str(DATA_DIR)).expanduser()
    state_dir = Path(get_env("VPS_STATE_DIR") or str(STATE_DIR)).expanduser()

    plans_file: Optional[Path] = None
    plans_raw = (get_env("VPS_PLANS_FILE") or "").strip()
    if plans_raw:
        plans_file = Path(plans_raw).expanduser()
        if not plans_file.is_file():
            raise ConfigError(f"VPS_PLANS_FILE not found: {plans_file}")

    return Settings(
        data_dir=data_dir,
        state_dir=state_dir,
        catalog_ttl_hours=parse_int_env("CATALOG_TTL_HOURS", str(CATALOG_TTL_HOURS), min_val=0),
        probe_timeout=parse_int_env("PROBE_TIMEOUT", str(PROBE_TIMEOUT), min_val=1, max_val=PROBE_TIMEOUT_MAX),
        libvirt_uri=(get_env("LIBVIRT_URI") or LIBVIRT_URI).strip(),
        default_network=(get_env("DEFAULT_NETWORK") or DEFAULT_NETWORK).strip(),
        plans_file=plans_file,
    )


def _parse_plan(name: str, raw: object) -> Plan:
    if not isinstance(raw, dict):
        raise ConfigError(f"Plan '{name}' must be a mapping")
    try:
        cpus = int(raw["cpus"])
        memory_mb = int(raw["memory_mb"])
    except KeyError as exc:
        raise ConfigError(f"Plan '{name}' is missing field {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Plan '{name}' has a non-integer cpus/memory_mb value") from exc
    if cpus < 1 or memory_mb < 128:
        raise ConfigError(f"Plan '{name}' needs cpus >= 1 and memory_mb >= 128")
    disk = validate_disk_size(str(raw.get("disk", "10G")))
    return Plan(name=name, cpus=cpus, memory_mb=memory_mb, disk=disk)


def load_plans(plans_file: Optional[Path] = None) -> Tuple[Dict[str, Plan], str]:
    """Return the plan table and the name of the default plan."""
    if plans_file is None:
        plans = {name: _parse_plan(name, raw) for name, raw in DEFAULT_PLANS.items()}
        return plans, DEFAULT_PLAN_NAME

    try:
        data = yaml.safe_load(plans_file.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"{plans_file} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ConfigError(f"Cannot read {plans_file}: {exc}")
    if not isinstance(data, dict) or not isinstance(data.get("plans"), dict) or not data["plans"]:
        raise ConfigError(f"{plans_file} must define a non-empty 'plans' mapping")

    plans = {str(name): _parse_plan(str(name), raw) for name, raw in data["plans"].items()}
    default = str(data.get("default") or next(iter(plans)))
    if default not in plans:
        available = ", ".join(sorted(plans))
        raise ConfigError(f"Default plan '{default}' is not defined. Available: {available}")
    return plans, default

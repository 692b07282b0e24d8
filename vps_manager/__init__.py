"""vps-manager package."""

__all__ = [
    "catalog",
    "cli",
    "config",
    "constants",
    "driver",
    "exceptions",
    "kvm",
    "models",
    "network",
    "notifications",
    "orchestrator",
    "plans",
    "probes",
    "registry",
    "seed",
    "utils",
]

"""Resource plan lookup for vps-manager."""

from __future__ import annotations

from typing import Dict, Optional

from vps_manager.models import Plan
from vps_manager.utils import log


def lookup_plan(plans: Dict[str, Plan], name: Optional[str], default: str) -> Plan:
    """Resolve ``name`` case-insensitively; unknown names fall back to ``default``."""
    wanted = (name or "").strip().lower()
    for plan_name, plan in plans.items():
        if plan_name.lower() == wanted:
            return plan
    fallback = plans[default]
    if wanted:
        log("WARN", f"Unknown plan '{name}'; falling back to default plan '{fallback.name}'")
    return fallback


def describe_plan(plan: Plan) -> str:
    return f"{plan.name}: {plan.memory_mb}MB RAM | {plan.cpus} vCPU | {plan.disk} Disk"

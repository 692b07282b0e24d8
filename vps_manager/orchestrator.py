"""Provisioning pipeline and lifecycle actions for vps-manager.

A creation request runs five stages in order: plan lookup, image resolution,
disk provisioning, seed configuration and launch. The first failing stage
aborts the run with a ``StageFailure`` naming that stage. Nothing already
created is rolled back; the operator deletes the instance explicitly.
"""

from __future__ import annotations

from typing import Dict, List

from vps_manager.constants import (
    DEFAULT_PLAN_NAME,
    INSTANCE_NAME_RE,
    LIFECYCLE_ACTIONS,
    STAGE_CONFIGURATION,
    STAGE_DISK,
    STAGE_LAUNCH,
)
from vps_manager.driver import Driver
from vps_manager.exceptions import (
    ConfigError,
    ImageUnavailableError,
    ManagerError,
    StageFailure,
    UnknownActionError,
)
from vps_manager.models import InstanceInfo, Plan, ProvisionRequest, VMSpec
from vps_manager.plans import lookup_plan
from vps_manager.registry import ImageRegistry
from vps_manager.seed import build_meta_data, build_user_data
from vps_manager.utils import log


class Orchestrator:
    def __init__(
        self,
        registry: ImageRegistry,
        driver: Driver,
        plans: Dict[str, Plan],
        default_plan: str = DEFAULT_PLAN_NAME,
    ) -> None:
        if default_plan not in plans:
            raise ConfigError(f"Default plan '{default_plan}' is not in the plan table")
        self.registry = registry
        self.driver = driver
        self.plans = plans
        self.default_plan = default_plan

    def create_server(self, request: ProvisionRequest) -> VMSpec:
        name = request.name.strip()
        if not INSTANCE_NAME_RE.match(name):
            raise ConfigError(
                f"Invalid instance name '{request.name}'. Use letters, digits, '.', '_' or '-' (max 63 chars)"
            )

        plan = lookup_plan(self.plans, request.plan, self.default_plan)
        log("INFO", f"[1/5] Plan {plan.name}: {plan.cpus} vCPU, {plan.memory_mb} MiB, {plan.disk} disk")

        log("INFO", f"[2/5] Resolving image '{request.image}'")
        try:
            image = self.registry.resolve(request.image)
        except ManagerError as exc:
            raise ImageUnavailableError(name, exc) from exc

        log("INFO", f"[3/5] Provisioning {plan.disk} disk")
        try:
            disk_path = self.driver.create_disk(name, image.local_path, plan.disk)
        except (ManagerError, OSError) as exc:
            raise StageFailure(STAGE_DISK, name, exc) from exc

        log("INFO", "[4/5] Generating guest configuration")
        try:
            user_data = build_user_data(name, request.credentials)
            meta_data = build_meta_data(name)
        except (ManagerError, ValueError) as exc:
            raise StageFailure(STAGE_CONFIGURATION, name, exc) from exc

        spec = VMSpec(
            name=name,
            disk_path=disk_path,
            seed_payload=user_data,
            meta_data=meta_data,
            cpus=plan.cpus,
            memory_mb=plan.memory_mb,
            bridge=(request.bridge or "").strip() or None,
        )
        target = f"bridge {spec.bridge}" if spec.bridge else "default NAT"
        log("INFO", f"[5/5] Launching {name} on {target}")
        try:
            self.driver.create_vm(spec)
        except (ManagerError, OSError) as exc:
            raise StageFailure(STAGE_LAUNCH, name, exc) from exc

        log("SUCCESS", f"Instance '{name}' is running ({self.driver.name})")
        return spec

    def perform_action(self, instance_id: str, action: str) -> None:
        verb = action.strip().lower()
        handlers = {
            "start": self.driver.start_vm,
            "stop": self.driver.stop_vm,
            "reboot": self.driver.reboot,
            "delete": self.driver.delete_vm,
        }
        if verb not in handlers:
            raise UnknownActionError(
                f"Unknown action '{action}'. Supported: {', '.join(LIFECYCLE_ACTIONS)}"
            )
        log("INFO", f"{verb.capitalize()} {instance_id}")
        handlers[verb](instance_id)

    def list_servers(self) -> List[InstanceInfo]:
        servers: List[InstanceInfo] = []
        for instance_id in self.driver.list_vms():
            try:
                info = self.driver.get_vm_info(instance_id)
            except ManagerError as exc:
                log("WARN", f"Skipping {instance_id}: {exc}")
                continue
            servers.append(info)
        return servers


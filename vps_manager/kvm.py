"""KVM/libvirt driver: qemu-img for disks, cloud-localds for seeds, libvirt for domains."""

from __future__ import annotations

import shutil
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from vps_manager.constants import DEFAULT_NETWORK, LIBVIRT_URI
from vps_manager.driver import Driver
from vps_manager.exceptions import DriverError
from vps_manager.models import InstanceInfo, VMSpec
from vps_manager.network import render_domain_xml
from vps_manager.utils import ensure_directory, log, run

# Same wording as `virsh domstate`.
_STATE_NAMES = {
    libvirt.VIR_DOMAIN_NOSTATE: "no state",
    libvirt.VIR_DOMAIN_RUNNING: "running",
    libvirt.VIR_DOMAIN_BLOCKED: "idle",
    libvirt.VIR_DOMAIN_PAUSED: "paused",
    libvirt.VIR_DOMAIN_SHUTDOWN: "in shutdown",
    libvirt.VIR_DOMAIN_SHUTOFF: "shut off",
    libvirt.VIR_DOMAIN_CRASHED: "crashed",
    libvirt.VIR_DOMAIN_PMSUSPENDED: "pmsuspended",
}

_ADDRESS_SOURCES = (
    libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE,
    libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_AGENT,
)


def _first_error_line(result: subprocess.CompletedProcess) -> str:
    for source in (result.stderr, result.stdout):
        for line in (source or "").splitlines():
            if line.strip():
                return line.strip()
    return f"exit status {result.returncode}"


def _is_missing_domain(exc: libvirt.libvirtError) -> bool:
    return exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN


class KVMDriver(Driver):
    name = "kvm"

    def __init__(
        self,
        disk_dir: Path,
        seed_dir: Path,
        libvirt_uri: str = LIBVIRT_URI,
        network: str = DEFAULT_NETWORK,
    ) -> None:
        self.disk_dir = disk_dir
        self.seed_dir = seed_dir
        self.libvirt_uri = libvirt_uri
        self.network = network
        self.conn: Optional[libvirt.virConnect] = None
        self._conn_lock = threading.Lock()

    def disk_path(self, instance: str) -> Path:
        return self.disk_dir / f"{instance}.qcow2"

    def seed_path(self, instance: str) -> Path:
        return self.seed_dir / f"{instance}-cidata.iso"

    # --- connection ---

    def connect(self) -> libvirt.virConnect:
        with self._conn_lock:
            if self.conn is None:
                try:
                    conn = libvirt.open(self.libvirt_uri)
                except libvirt.libvirtError as exc:
                    raise DriverError("connect", self.libvirt_uri, str(exc)) from exc
                if conn is None:
                    raise DriverError("connect", self.libvirt_uri, "failed to open libvirt connection")
                self.conn = conn
            return self.conn

    def close(self) -> None:
        with self._conn_lock:
            if self.conn is not None:
                self.conn.close()
                self.conn = None

    def _lookup(self, operation: str, instance_id: str) -> libvirt.virDomain:
        conn = self.connect()
        try:
            return conn.lookupByName(instance_id)
        except libvirt.libvirtError as exc:
            raise DriverError(operation, instance_id, str(exc)) from exc

    def _exec(self, cmd: List[str], operation: str, target: str) -> subprocess.CompletedProcess:
        try:
            return run(cmd, check=False, capture_output=True)
        except FileNotFoundError as exc:
            raise DriverError(operation, target, f"{cmd[0]} is not installed") from exc
        except OSError as exc:
            raise DriverError(operation, target, str(exc)) from exc

    # --- provisioning ---

    def create_disk(self, instance: str, base_image: Path, size: str) -> Path:
        disk = self.disk_path(instance)
        if disk.exists():
            raise DriverError("create_disk", instance, f"disk already exists at {disk}")
        try:
            ensure_directory(self.disk_dir)
        except OSError as exc:
            raise DriverError("create_disk", instance, str(exc)) from exc
        log("INFO", f"Creating {size} differential disk {disk} (backing {base_image})")
        cmd = ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2", "-b", str(base_image), str(disk), size]
        result = self._exec(cmd, "create_disk", instance)
        if result.returncode != 0:
            raise DriverError("create_disk", instance, _first_error_line(result))
        return disk

    def _write_seed_iso(self, spec: VMSpec) -> Path:
        iso = self.seed_path(spec.name)
        try:
            ensure_directory(self.seed_dir)
            with tempfile.TemporaryDirectory() as tmpdir:
                tmp = Path(tmpdir)
                user_data = tmp / "user-data"
                meta_data = tmp / "meta-data"
                user_data.write_bytes(spec.seed_payload)
                meta_data.write_bytes(spec.meta_data)
                if shutil.which("cloud-localds"):
                    cmd = ["cloud-localds", str(iso), str(user_data), str(meta_data)]
                else:
                    cmd = [
                        "genisoimage", "-output", str(iso), "-volid", "cidata",
                        "-joliet", "-rock", str(user_data), str(meta_data),
                    ]
                result = self._exec(cmd, "create_seed", spec.name)
        except OSError as exc:
            raise DriverError("create_seed", spec.name, str(exc)) from exc
        if result.returncode != 0:
            raise DriverError("create_seed", spec.name, _first_error_line(result))
        return iso

    def create_vm(self, spec: VMSpec) -> None:
        iso = self._write_seed_iso(spec)
        xml = render_domain_xml(spec, str(iso), network=self.network)
        conn = self.connect()
        try:
            domain = conn.defineXML(xml)
        except libvirt.libvirtError as exc:
            raise DriverError("define", spec.name, str(exc)) from exc
        if domain is None:
            raise DriverError("define", spec.name, "libvirt returned no domain")
        log("SUCCESS", f"Defined domain {spec.name}")
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            raise DriverError("start", spec.name, str(exc)) from exc

    # --- lifecycle ---

    def delete_vm(self, instance_id: str) -> None:
        undefine_error: Optional[str] = None
        domain: Optional[libvirt.virDomain] = None
        try:
            domain = self.connect().lookupByName(instance_id)
        except libvirt.libvirtError as exc:
            if _is_missing_domain(exc):
                log("INFO", f"Domain {instance_id} is not defined; nothing to undefine")
            else:
                undefine_error = str(exc)
        except DriverError as exc:
            undefine_error = str(exc)

        if domain is not None:
            try:
                domain.destroy()
            except libvirt.libvirtError as exc:
                log("DEBUG", f"destroy {instance_id}: {exc}")
            try:
                domain.undefineFlags(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
            except libvirt.libvirtError as exc:
                if _is_missing_domain(exc):
                    log("INFO", f"Domain {instance_id} disappeared before undefine")
                else:
                    undefine_error = str(exc)

        for artifact in (self.disk_path(instance_id), self.seed_path(instance_id)):
            try:
                artifact.unlink(missing_ok=True)
            except OSError as exc:
                log("WARN", f"Cleanup of {instance_id} incomplete: {artifact}: {exc}")

        if undefine_error is not None:
            raise DriverError("undefine", instance_id, undefine_error)

    def start_vm(self, instance_id: str) -> None:
        domain = self._lookup("start", instance_id)
        try:
            domain.create()
        except libvirt.libvirtError as exc:
            raise DriverError("start", instance_id, str(exc)) from exc

    def stop_vm(self, instance_id: str) -> None:
        domain = self._lookup("stop", instance_id)
        try:
            domain.destroy()
        except libvirt.libvirtError as exc:
            raise DriverError("stop", instance_id, str(exc)) from exc

    def reboot(self, instance_id: str) -> None:
        domain = self._lookup("reboot", instance_id)
        try:
            domain.reboot(0)
        except libvirt.libvirtError as exc:
            raise DriverError("reboot", instance_id, str(exc)) from exc

    # --- inspection ---

    def list_vms(self) -> List[str]:
        conn = self.connect()
        try:
            return [domain.name() for domain in conn.listAllDomains(0)]
        except libvirt.libvirtError as exc:
            raise DriverError("list", self.libvirt_uri, str(exc)) from exc

    @staticmethod
    def _address(domain: libvirt.virDomain) -> Optional[str]:
        for source in _ADDRESS_SOURCES:
            try:
                interfaces = domain.interfaceAddresses(source, 0) or {}
            except libvirt.libvirtError:
                continue
            for iface in interfaces.values():
                for addr in iface.get("addrs") or []:
                    if addr.get("type") != libvirt.VIR_IP_ADDR_TYPE_IPV4:
                        continue
                    ip = addr.get("addr")
                    if ip and not ip.startswith("127."):
                        return ip
        return None

    def get_vm_info(self, instance_id: str) -> InstanceInfo:
        domain = self._lookup("domstate", instance_id)
        try:
            state, _reason = domain.state()
        except libvirt.libvirtError as exc:
            raise DriverError("domstate", instance_id, str(exc)) from exc
        return InstanceInfo(
            id=instance_id,
            name=instance_id,
            status=_STATE_NAMES.get(state, "unknown"),
            address=self._address(domain) if state == libvirt.VIR_DOMAIN_RUNNING else None,
        )

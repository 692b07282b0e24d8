"""Tests for vps_manager.kvm module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import libvirt
import pytest

from vps_manager.exceptions import DriverError
from vps_manager.kvm import KVMDriver
from vps_manager.models import VMSpec


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def libvirt_error(message, code=libvirt.VIR_ERR_INTERNAL_ERROR):
    err = libvirt.libvirtError(message)
    err.get_error_code = lambda: code
    return err


@pytest.fixture
def conn():
    return MagicMock()


@pytest.fixture
def domain(conn):
    dom = MagicMock()
    conn.lookupByName.return_value = dom
    conn.defineXML.return_value = dom
    return dom


@pytest.fixture
def kvm(tmp_path, conn):
    driver = KVMDriver(tmp_path / "vms", tmp_path / "configs", libvirt_uri="qemu:///system", network="default")
    with patch("vps_manager.kvm.libvirt.open", return_value=conn):
        yield driver


def commands(mock_run):
    return [call.args[0] for call in mock_run.call_args_list]


def make_spec(tmp_path, name="web-1"):
    return VMSpec(
        name=name,
        disk_path=tmp_path / "vms" / f"{name}.qcow2",
        seed_payload=b"#cloud-config\n",
        meta_data=b"instance-id: iid-web-1\n",
        cpus=1,
        memory_mb=2048,
    )


class TestConnect:
    def test_opens_once(self, kvm, conn):
        with patch("vps_manager.kvm.libvirt.open", return_value=conn) as mock_open:
            assert kvm.connect() is conn
            assert kvm.connect() is conn
        mock_open.assert_called_once_with("qemu:///system")

    def test_open_failure(self, tmp_path):
        driver = KVMDriver(tmp_path / "vms", tmp_path / "configs")
        with patch("vps_manager.kvm.libvirt.open", side_effect=libvirt_error("Failed to connect socket")):
            with pytest.raises(DriverError, match="Failed to connect socket"):
                driver.connect()

    def test_close(self, kvm, conn):
        kvm.connect()
        kvm.close()
        conn.close.assert_called_once()
        assert kvm.conn is None


class TestCreateDisk:
    def test_qemu_img_backing_file(self, kvm, tmp_path):
        with patch("vps_manager.kvm.run", return_value=completed()) as mock_run:
            disk = kvm.create_disk("web-1", Path("/cache/base.qcow2"), "20G")
        assert disk == tmp_path / "vms" / "web-1.qcow2"
        assert commands(mock_run) == [
            ["qemu-img", "create", "-f", "qcow2", "-F", "qcow2", "-b", "/cache/base.qcow2", str(disk), "20G"]
        ]

    def test_existing_disk_rejected(self, kvm):
        kvm.disk_dir.mkdir(parents=True)
        kvm.disk_path("web-1").write_bytes(b"in use")
        with patch("vps_manager.kvm.run") as mock_run:
            with pytest.raises(DriverError, match="already exists"):
                kvm.create_disk("web-1", Path("/cache/base.qcow2"), "20G")
        mock_run.assert_not_called()

    def test_qemu_img_failure(self, kvm):
        result = completed(1, stderr="qemu-img: Could not open backing file\n")
        with patch("vps_manager.kvm.run", return_value=result):
            with pytest.raises(DriverError, match="Could not open backing file"):
                kvm.create_disk("web-1", Path("/cache/base.qcow2"), "20G")

    def test_missing_tool(self, kvm):
        with patch("vps_manager.kvm.run", side_effect=FileNotFoundError("qemu-img")):
            with pytest.raises(DriverError, match="qemu-img is not installed"):
                kvm.create_disk("web-1", Path("/cache/base.qcow2"), "20G")

    def test_unusable_disk_dir_is_driver_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        driver = KVMDriver(blocker / "vms", tmp_path / "configs")
        with patch("vps_manager.kvm.run") as mock_run:
            with pytest.raises(DriverError, match="create_disk failed for 'web-1'"):
                driver.create_disk("web-1", Path("/cache/base.qcow2"), "20G")
        mock_run.assert_not_called()

    def test_exec_permission_error_is_driver_error(self, kvm):
        with patch("vps_manager.kvm.run", side_effect=PermissionError("Permission denied")):
            with pytest.raises(DriverError, match="Permission denied"):
                kvm.create_disk("web-1", Path("/cache/base.qcow2"), "20G")


class TestCreateVm:
    def test_seed_define_start(self, kvm, tmp_path, conn, domain):
        spec = make_spec(tmp_path)
        with patch("vps_manager.kvm.shutil.which", return_value="/usr/bin/cloud-localds"), \
                patch("vps_manager.kvm.run", return_value=completed()) as mock_run:
            kvm.create_vm(spec)
        seed_cmd = commands(mock_run)[0]
        assert seed_cmd[0] == "cloud-localds"
        assert seed_cmd[1] == str(kvm.seed_path("web-1"))
        xml = conn.defineXML.call_args.args[0]
        assert "<name>web-1</name>" in xml
        assert str(kvm.seed_path("web-1")) in xml
        domain.create.assert_called_once()

    def test_genisoimage_fallback(self, kvm, tmp_path, domain):
        with patch("vps_manager.kvm.shutil.which", return_value=None), \
                patch("vps_manager.kvm.run", return_value=completed()) as mock_run:
            kvm.create_vm(make_spec(tmp_path))
        seed_cmd = commands(mock_run)[0]
        assert seed_cmd[0] == "genisoimage"
        assert "cidata" in seed_cmd

    def test_seed_failure_skips_define(self, kvm, tmp_path, conn):
        with patch("vps_manager.kvm.shutil.which", return_value="/usr/bin/cloud-localds"), \
                patch("vps_manager.kvm.run", return_value=completed(1, stderr="cloud-localds: bad input\n")):
            with pytest.raises(DriverError, match="bad input"):
                kvm.create_vm(make_spec(tmp_path))
        conn.defineXML.assert_not_called()

    def test_unwritable_seed_dir_is_driver_error(self, tmp_path, conn):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        driver = KVMDriver(tmp_path / "vms", blocker / "configs")
        with patch("vps_manager.kvm.libvirt.open", return_value=conn), \
                patch("vps_manager.kvm.run") as mock_run:
            with pytest.raises(DriverError, match="create_seed failed for 'web-1'"):
                driver.create_vm(make_spec(tmp_path))
        mock_run.assert_not_called()
        conn.defineXML.assert_not_called()

    def test_define_failure(self, kvm, tmp_path, conn, domain):
        conn.defineXML.side_effect = libvirt_error("XML error: bad memory")
        with patch("vps_manager.kvm.shutil.which", return_value="/usr/bin/cloud-localds"), \
                patch("vps_manager.kvm.run", return_value=completed()):
            with pytest.raises(DriverError, match="bad memory"):
                kvm.create_vm(make_spec(tmp_path))
        domain.create.assert_not_called()

    def test_start_failure(self, kvm, tmp_path, domain):
        domain.create.side_effect = libvirt_error("network 'default' is not active")
        with patch("vps_manager.kvm.shutil.which", return_value="/usr/bin/cloud-localds"), \
                patch("vps_manager.kvm.run", return_value=completed()):
            with pytest.raises(DriverError, match="start failed for 'web-1'"):
                kvm.create_vm(make_spec(tmp_path))


class TestDeleteVm:
    def _artifacts(self, kvm):
        kvm.disk_dir.mkdir(parents=True)
        kvm.seed_dir.mkdir(parents=True)
        kvm.disk_path("web-1").write_bytes(b"disk")
        kvm.seed_path("web-1").write_bytes(b"iso")

    def test_removes_domain_and_files(self, kvm, conn, domain):
        self._artifacts(kvm)
        kvm.delete_vm("web-1")
        conn.lookupByName.assert_called_once_with("web-1")
        domain.destroy.assert_called_once()
        domain.undefineFlags.assert_called_once_with(libvirt.VIR_DOMAIN_UNDEFINE_NVRAM)
        assert not kvm.disk_path("web-1").exists()
        assert not kvm.seed_path("web-1").exists()

    def test_missing_files_still_undefines(self, kvm, domain):
        kvm.delete_vm("web-1")
        domain.undefineFlags.assert_called_once()

    def test_stopped_domain_still_undefined(self, kvm, domain):
        domain.destroy.side_effect = libvirt_error("domain is not running", libvirt.VIR_ERR_OPERATION_INVALID)
        kvm.delete_vm("web-1")
        domain.undefineFlags.assert_called_once()

    def test_missing_domain_tolerated(self, kvm, conn):
        self._artifacts(kvm)
        conn.lookupByName.side_effect = libvirt_error("Domain not found", libvirt.VIR_ERR_NO_DOMAIN)
        kvm.delete_vm("web-1")
        assert not kvm.disk_path("web-1").exists()
        assert not kvm.seed_path("web-1").exists()

    def test_nothing_left_at_all(self, kvm, conn):
        conn.lookupByName.side_effect = libvirt_error("Domain not found", libvirt.VIR_ERR_NO_DOMAIN)
        kvm.delete_vm("web-1")

    def test_undefine_failure_raises_after_cleanup(self, kvm, domain):
        self._artifacts(kvm)
        domain.undefineFlags.side_effect = libvirt_error("Requested operation is not valid")
        with pytest.raises(DriverError, match="undefine failed for 'web-1'"):
            kvm.delete_vm("web-1")
        assert not kvm.disk_path("web-1").exists()

    def test_connection_failure_raises_after_cleanup(self, tmp_path):
        driver = KVMDriver(tmp_path / "vms", tmp_path / "configs")
        self._artifacts(driver)
        with patch("vps_manager.kvm.libvirt.open", side_effect=libvirt_error("Failed to connect socket")):
            with pytest.raises(DriverError, match="undefine failed for 'web-1'"):
                driver.delete_vm("web-1")
        assert not driver.disk_path("web-1").exists()


class TestLifecycle:
    @pytest.mark.parametrize(
        "method, call",
        [("start_vm", "create"), ("stop_vm", "destroy"), ("reboot", "reboot")],
    )
    def test_domain_calls(self, kvm, conn, domain, method, call):
        getattr(kvm, method)("web-1")
        conn.lookupByName.assert_called_once_with("web-1")
        getattr(domain, call).assert_called_once()

    def test_failure_raises(self, kvm, domain):
        domain.destroy.side_effect = libvirt_error("domain is not running")
        with pytest.raises(DriverError, match="not running"):
            kvm.stop_vm("web-1")

    def test_unknown_domain(self, kvm, conn):
        conn.lookupByName.side_effect = libvirt_error("Domain not found", libvirt.VIR_ERR_NO_DOMAIN)
        with pytest.raises(DriverError, match="start failed for 'ghost'"):
            kvm.start_vm("ghost")


def lease(ip, kind=libvirt.VIR_IP_ADDR_TYPE_IPV4):
    return {"vnet0": {"hwaddr": "52:54:00:aa:bb:cc", "addrs": [{"type": kind, "addr": ip, "prefix": 24}]}}


class TestInspection:
    def test_list_vms(self, kvm, conn):
        first, second = MagicMock(), MagicMock()
        first.name.return_value = "web-1"
        second.name.return_value = "db-1"
        conn.listAllDomains.return_value = [first, second]
        assert kvm.list_vms() == ["web-1", "db-1"]

    def test_get_vm_info_with_lease(self, kvm, domain):
        domain.state.return_value = [libvirt.VIR_DOMAIN_RUNNING, 1]
        domain.interfaceAddresses.return_value = lease("192.168.122.45")
        info = kvm.get_vm_info("web-1")
        assert info.status == "running"
        assert info.address == "192.168.122.45"
        domain.interfaceAddresses.assert_called_once_with(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0)

    def test_address_falls_back_to_agent(self, kvm, domain):
        domain.state.return_value = [libvirt.VIR_DOMAIN_RUNNING, 1]

        def addresses(source, flags):
            if source == libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE:
                return {}
            return {
                "lo": {"hwaddr": None, "addrs": [{"type": libvirt.VIR_IP_ADDR_TYPE_IPV4, "addr": "127.0.0.1", "prefix": 8}]},
                **lease("10.0.0.7"),
            }

        domain.interfaceAddresses.side_effect = addresses
        assert kvm.get_vm_info("web-1").address == "10.0.0.7"

    def test_ipv6_only_has_no_address(self, kvm, domain):
        domain.state.return_value = [libvirt.VIR_DOMAIN_RUNNING, 1]
        domain.interfaceAddresses.side_effect = [
            lease("fe80::1", libvirt.VIR_IP_ADDR_TYPE_IPV6),
            libvirt_error("QEMU guest agent is not connected"),
        ]
        assert kvm.get_vm_info("web-1").address is None

    def test_stopped_domain(self, kvm, domain):
        domain.state.return_value = [libvirt.VIR_DOMAIN_SHUTOFF, 1]
        info = kvm.get_vm_info("web-1")
        assert info.status == "shut off"
        assert info.address is None
        domain.interfaceAddresses.assert_not_called()

"""cloud-init seed configuration for new instances."""

from __future__ import annotations

import textwrap
from typing import Dict, List

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vps_manager.exceptions import ConfigError
from vps_manager.models import Credentials
from vps_manager.utils import hash_password

SSHD_DROPIN_PATH = "/etc/ssh/sshd_config.d/99-vps-manager.conf"


def _sshd_dropin(allow_root_login: bool) -> str:
    return (
        f"PermitRootLogin {'yes' if allow_root_login else 'no'}\n"
        "PasswordAuthentication yes\n"
        "KbdInteractiveAuthentication yes\n"
        "PubkeyAuthentication yes\n"
    )


def build_user_data(hostname: str, credentials: Credentials) -> bytes:
    """Render the #cloud-config user-data payload."""
    if not credentials.root_password:
        raise ConfigError("A root password is required")
    if credentials.username and credentials.username != "root" and not credentials.user_password:
        raise ConfigError(f"User '{credentials.username}' needs a password")

    users: List[object] = ["default"]
    chpasswd_users: List[Dict[str, str]] = [
        {"name": "root", "password": hash_password(credentials.root_password), "type": "hash"}
    ]
    if credentials.username and credentials.username != "root":
        users.append(
            {
                "name": credentials.username,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "groups": "users",
                "shell": "/bin/bash",
                "lock_passwd": False,
            }
        )
        chpasswd_users.append(
            {
                "name": credentials.username,
                "password": hash_password(str(credentials.user_password)),
                "type": "hash",
            }
        )

    cfg: Dict[str, object] = {
        "hostname": hostname,
        "ssh_pwauth": True,
        "disable_root": not credentials.allow_root_login,
        "package_update": True,
        "package_upgrade": False,
        "users": users,
        "chpasswd": {"expire": False, "users": chpasswd_users},
        "write_files": [
            {
                "path": SSHD_DROPIN_PATH,
                "permissions": "0644",
                "content": _sshd_dropin(credentials.allow_root_login),
            }
        ],
        "runcmd": [
            ["systemctl", "daemon-reload"],
            ["sh", "-c", "systemctl restart sshd 2>/dev/null || systemctl restart ssh 2>/dev/null || true"],
        ],
    }
    text = "#cloud-config\n" + yaml.safe_dump(cfg, sort_keys=False, default_flow_style=False)
    return text.encode("utf-8")


def build_meta_data(hostname: str) -> bytes:
    meta = (
        textwrap.dedent(
            f"""
        instance-id: iid-{hostname}
        local-hostname: {hostname}
        """
        ).strip()
        + "\n"
    )
    return meta.encode("utf-8")

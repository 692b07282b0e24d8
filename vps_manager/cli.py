"""CLI entry points for vps-manager."""

from __future__ import annotations

import argparse
import getpass
import json
from dataclasses import dataclass
from typing import List, Optional

from vps_manager.catalog import Catalog
from vps_manager.config import Settings, load_plans, load_settings
from vps_manager.constants import LIFECYCLE_ACTIONS
from vps_manager.exceptions import ConfigError, ManagerError
from vps_manager.kvm import KVMDriver
from vps_manager.models import CatalogEntry, Credentials, InstanceInfo, ProvisionRequest
from vps_manager.notifications import handle_release
from vps_manager.orchestrator import Orchestrator
from vps_manager.plans import describe_plan
from vps_manager.probes import default_probes
from vps_manager.registry import ImageRegistry, register_catalog_entry
from vps_manager.utils import has_controlling_tty, log


@dataclass
class Services:
    settings: Settings
    catalog: Catalog
    registry: ImageRegistry
    orchestrator: Orchestrator


def build_services(settings: Settings) -> Services:
    """Construct the per-process service objects shared by every command."""
    plans, default_plan = load_plans(settings.plans_file)
    catalog = Catalog(
        default_probes(timeout=settings.probe_timeout),
        settings.catalog_cache_path,
        ttl_hours=settings.catalog_ttl_hours,
    )
    registry = ImageRegistry(settings.registry_path, settings.image_cache_dir)
    driver = KVMDriver(
        settings.disk_dir,
        settings.seed_dir,
        libvirt_uri=settings.libvirt_uri,
        network=settings.default_network,
    )
    orchestrator = Orchestrator(registry, driver, plans, default_plan)
    return Services(settings=settings, catalog=catalog, registry=registry, orchestrator=orchestrator)


def print_catalog(entries: List[CatalogEntry]) -> None:
    if not entries:
        log("WARN", "Catalog is empty (no mirrors reachable?)")
        return
    max_name = max(len(entry.display_name) for entry in entries)
    for idx, entry in enumerate(entries, start=1):
        lts = " LTS" if entry.is_lts else ""
        print(f"  [{idx:>2}] {entry.display_name:<{max_name}}  {entry.logical_name}{lts}")


def print_servers(servers: List[InstanceInfo]) -> None:
    print(f"{'NAME':<24} {'STATUS':<12} IP")
    print("-" * 52)
    for server in servers:
        print(f"{server.name:<24} {server.status:<12} {server.address or '-'}")


def _read_password(value: Optional[str], prompt: str) -> str:
    if value:
        return value
    if not has_controlling_tty():
        raise ConfigError(f"{prompt} is required (pass it on the command line when not on a TTY)")
    while True:
        first = getpass.getpass(f"{prompt}: ")
        second = getpass.getpass("Confirm Password: ")
        if first and first == second:
            return first
        print("Passwords do not match or are empty.")


def _cmd_catalog(services: Services, args: argparse.Namespace) -> int:
    entries = services.catalog.refresh() if args.refresh else services.catalog.load()
    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
    else:
        print_catalog(entries)
    return 0


def _cmd_plans(services: Services, args: argparse.Namespace) -> int:
    for plan in services.orchestrator.plans.values():
        marker = " (default)" if plan.name == services.orchestrator.default_plan else ""
        print(f"  {describe_plan(plan)}{marker}")
    return 0


def _cmd_images(services: Services, args: argparse.Namespace) -> int:
    registry = services.registry
    if args.images_command == "list":
        for entry in registry.list():
            present = "cached" if entry.local_path.exists() else "missing"
            print(f"  {entry.name:<24} {entry.status:<12} {present:<8} {entry.url}")
        return 0
    if args.images_command == "register":
        registry.register(args.name, args.url, args.checksum or "")
        return 0
    if args.images_command == "resolve":
        entry = registry.resolve(args.name)
        log("SUCCESS", f"{entry.name} -> {entry.local_path}")
        return 0
    if args.images_command == "add-from-catalog":
        services.catalog.load()
        entry = services.catalog.find(args.distro, args.version)
        if entry is None:
            raise ManagerError(f"No catalog entry for {args.distro} {args.version}")
        registered = register_catalog_entry(registry, entry)
        if args.pull:
            registry.resolve(registered.name)
        return 0
    if args.images_command == "announce":
        payload = {"url": args.url, "id": args.id, "distro": args.distro, "version": args.version,
                   "format": args.format}
        _, worker = handle_release(registry, payload)
        worker.join()
        return 0
    raise ConfigError(f"Unknown images command '{args.images_command}'")


def _cmd_create(services: Services, args: argparse.Namespace) -> int:
    root_password = _read_password(args.password, "Root Password")
    user_password = None
    if args.username and args.username != "root":
        user_password = _read_password(args.user_password, f"Password for {args.username}")
    request = ProvisionRequest(
        name=args.name,
        image=args.image,
        plan=args.plan,
        credentials=Credentials(
            root_password=root_password,
            username=args.username,
            user_password=user_password,
            allow_root_login=args.allow_root_login,
        ),
        bridge=args.bridge,
    )
    services.orchestrator.create_server(request)
    print(f"Connect via: virsh console {request.name}")
    return 0


def _cmd_action(services: Services, args: argparse.Namespace) -> int:
    services.orchestrator.perform_action(args.id, args.action)
    log("SUCCESS", f"{args.action} {args.id}: done")
    return 0


def _cmd_list(services: Services, args: argparse.Namespace) -> int:
    print_servers(services.orchestrator.list_servers())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vps-manager", description="Provision KVM instances from cloud images")
    sub = parser.add_subparsers(dest="command", required=True)

    catalog = sub.add_parser("catalog", help="Show discoverable images")
    catalog.add_argument("--refresh", action="store_true", help="Probe mirrors even if the cache is fresh")
    catalog.add_argument("--json", action="store_true", help="Print the catalog as JSON")
    catalog.set_defaults(handler=_cmd_catalog)

    plans = sub.add_parser("plans", help="Show resource plans")
    plans.set_defaults(handler=_cmd_plans)

    images = sub.add_parser("images", help="Manage the image registry")
    images_sub = images.add_subparsers(dest="images_command", required=True)
    images_sub.add_parser("list", help="List registered images")
    register = images_sub.add_parser("register", help="Register or replace an image")
    register.add_argument("name")
    register.add_argument("url")
    register.add_argument("--checksum", default="")
    resolve = images_sub.add_parser("resolve", help="Download an image if it is not cached")
    resolve.add_argument("name")
    add = images_sub.add_parser("add-from-catalog", help="Register a catalog image as <distro>-<version>")
    add.add_argument("distro")
    add.add_argument("version")
    add.add_argument("--pull", action="store_true", help="Download right away")
    announce = images_sub.add_parser("announce", help="Handle a release notification")
    announce.add_argument("--url", required=True)
    announce.add_argument("--id")
    announce.add_argument("--distro")
    announce.add_argument("--version")
    announce.add_argument("--format", default="qcow2")
    images.set_defaults(handler=_cmd_images)

    create = sub.add_parser("create", help="Create and start a new instance")
    create.add_argument("name")
    create.add_argument("--image", required=True, help="Logical image name, e.g. ubuntu-24.04")
    create.add_argument("--plan", default=None, help="Plan name (case-insensitive)")
    create.add_argument("--username", default=None, help="Secondary sudo user (omit for root only)")
    create.add_argument("--password", default=None, help="Root password")
    create.add_argument("--user-password", default=None, help="Password for --username")
    create.add_argument("--allow-root-login", action="store_true", help="Permit root SSH login")
    create.add_argument("--bridge", default=None, help="Host bridge (default: NAT network)")
    create.set_defaults(handler=_cmd_create)

    action = sub.add_parser("action", help="Run a lifecycle action")
    action.add_argument("id")
    action.add_argument("action", choices=LIFECYCLE_ACTIONS)
    action.set_defaults(handler=_cmd_action)

    listing = sub.add_parser("list", help="List instances with status and address")
    listing.set_defaults(handler=_cmd_list)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        services = build_services(load_settings())
        return args.handler(services, args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1

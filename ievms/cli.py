"""CLI entry points for ievms."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from ievms.builder import build_all, exit_code, plan_builds, summarize
from ievms.config import load_version_table, parse_env, resolve_profile
from ievms.constants import _SENSITIVE_FIELDS, IEVMS_VERSION
from ievms.exceptions import ProvisionError
from ievms.fetcher import ArtifactFetcher
from ievms.host import preflight
from ievms.hypervisor import VBoxManage
from ievms.models import ProvisionConfig, VersionTable
from ievms.utils import log


def list_versions(table: VersionTable, cfg: ProvisionConfig) -> None:
    """Print the buildable versions and the VM each resolves to under the current reuse flags."""
    width = max(len(version) for version in table.versions)
    for version in table.versions:
        try:
            profile = resolve_profile(table, version, cfg)
        except ProvisionError as exc:
            print(f"  {version:<{width}}  unavailable: {exc}")
            continue
        print(f"  {version:<{width}}  {profile.vm_name}  (archive={profile.archive})")


def show_config(cfg: ProvisionConfig) -> None:
    """Print the resolved configuration and exit."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        elif isinstance(value, list):
            print(f"  {field.name}: {' '.join(value)}")
        else:
            print(f"  {field.name}: {value}")


def dry_run(table: VersionTable, cfg: ProvisionConfig) -> int:
    """Resolve every requested version and expand its recipe without touching the host."""
    plans, rejected = plan_builds(cfg, table)
    for plan in plans:
        profile, steps = plan.profile, plan.recipe.steps
        log("SUCCESS", f"IE {plan.version}: {profile.vm_name} from {profile.url} ({len(steps)} steps)")
        for index, step in enumerate(steps, start=1):
            log("INFO", f"    {index:>2}. {step.describe()}")
    return 1 if rejected else 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Provision VirtualBox VMs for testing Internet Explorer and Edge")
    parser.add_argument("versions", nargs="*", help="Versions to build (default: IEVMS_VERSIONS or all)")
    parser.add_argument("--list-versions", action="store_true", help="List buildable versions and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Resolve versions and recipes, then exit")
    parser.add_argument("--version", action="version", version=f"ievms {IEVMS_VERSION}")
    args = parser.parse_args(argv)

    try:
        cfg = parse_env()
        if args.versions:
            cfg.versions = list(args.versions)
        table = load_version_table(cfg.config_path)
    except ProvisionError as exc:
        log("ERROR", str(exc))
        return 1

    if args.list_versions:
        list_versions(table, cfg)
        return 0

    if args.show_config:
        show_config(cfg)
        return 0

    if args.dry_run:
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        log("INFO", "=== Recipes ===")
        return dry_run(table, cfg)

    planned = plan_builds(cfg, table)
    plans, rejected = planned
    if plans:
        hypervisor = VBoxManage(cfg.vboxmanage)
        fetcher = ArtifactFetcher()
        try:
            preflight(cfg, hypervisor, fetcher)
            results = build_all(cfg, table, hypervisor, fetcher, planned=planned)
        except ProvisionError as exc:
            log("ERROR", str(exc))
            return 1
        except KeyboardInterrupt:
            log("WARN", "Interrupted")
            return 1
    else:
        results = rejected

    summarize(results)
    code = exit_code(results)
    if code == 0:
        log("SUCCESS", "Done!")
    return code

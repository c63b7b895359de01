"""Host preflight: VirtualBox presence, release lookup and Extension Pack install."""

from __future__ import annotations

import platform
import re
from typing import Optional

from ievms.constants import EXTPACK_NAME, VBOX_DOWNLOAD_BASE, VBOX_HASHES_BASE
from ievms.exceptions import PreconditionError
from ievms.fetcher import ArtifactFetcher
from ievms.hypervisor import Hypervisor
from ievms.models import ArtifactSpec, ProvisionConfig
from ievms.utils import ensure_directory, fetch_text, log

SUPPORTED_SYSTEMS = ("Darwin", "Linux")

_RELEASE_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)")


def check_system(system: Optional[str] = None) -> str:
    system = system or platform.system()
    if system not in SUPPORTED_SYSTEMS:
        raise PreconditionError(f"Sorry, {system} is not supported.")
    return system


def check_virtualbox(hypervisor: Hypervisor) -> str:
    log("INFO", "Checking for VirtualBox")
    version = hypervisor.version()
    if "kernel module is not loaded" in version:
        raise PreconditionError(version)
    log("DEBUG", f"VBoxManage reports version {version}")
    return version


def resolve_release(version: str, listing: str) -> str:
    """Map ``VBoxManage -v`` output to a release published on the download server.

    Starting at the reported patch level, walk down until a matching
    directory shows up in ``listing``. Falls back to the reported release.
    """
    match = _RELEASE_RE.match(version.strip())
    if match is None:
        raise PreconditionError(f"Unrecognised VirtualBox version '{version}'")
    major, minor, patch = match.groups()
    for release in range(int(patch), -1, -1):
        candidate = f"{major}.{minor}.{release}"
        if f"{candidate}/" in listing:
            log("INFO", f"Virtualbox version {candidate} found.")
            return candidate
        log("INFO", f"Virtualbox version {candidate} not found, skipping.")
    fallback = f"{major}.{minor}.{patch}"
    log("WARN", f"No published release matched {version.strip()}; using {fallback}")
    return fallback


def md5_from_sums(sums: str, filename: str) -> Optional[str]:
    for line in sums.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[-1].lstrip("*") == filename:
            return parts[0].lower()
    return None


def extpack_spec(cfg: ProvisionConfig, release: str, sums: str) -> ArtifactSpec:
    archive = f"Oracle_VM_VirtualBox_Extension_Pack-{release}.vbox-extpack"
    checksum = md5_from_sums(sums, archive)
    if checksum is None:
        log("WARN", f"No MD5 published for {archive}; the download will not be verified")
    return ArtifactSpec(
        name=EXTPACK_NAME,
        url=f"{VBOX_DOWNLOAD_BASE}/{release}/{archive}",
        destination=cfg.home / archive,
        checksum=checksum,
        max_attempts=cfg.download_retries,
    )


def ensure_extpack(cfg: ProvisionConfig, hypervisor: Hypervisor, fetcher: ArtifactFetcher, version: str) -> bool:
    """Install the Extension Pack unless VirtualBox already lists it.

    Returns True when an install happened.
    """
    log("INFO", f"Checking for {EXTPACK_NAME}")
    if EXTPACK_NAME in hypervisor.list_extpacks():
        log("INFO", f"{EXTPACK_NAME} is installed")
        return False

    release = resolve_release(version, fetch_text(f"{VBOX_DOWNLOAD_BASE}/"))
    spec = extpack_spec(cfg, release, fetch_text(f"{VBOX_HASHES_BASE}/{release}/MD5SUMS"))
    path = fetcher.require(spec)
    log("INFO", f"Installing {EXTPACK_NAME} from {path}")
    hypervisor.install_extpack(path)
    return True


def preflight(cfg: ProvisionConfig, hypervisor: Hypervisor, fetcher: ArtifactFetcher) -> None:
    """Get the host ready for building: supported OS, home folder, VirtualBox and its Extension Pack."""
    check_system()
    ensure_directory(cfg.home)
    version = check_virtualbox(hypervisor)
    ensure_extpack(cfg, hypervisor, fetcher, version)

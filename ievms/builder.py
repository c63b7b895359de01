"""Build driver: prefetch shared artifacts and run one worker per browser version."""

from __future__ import annotations

import shutil
import tempfile
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ievms.config import artifact_spec, resolve_profile
from ievms.exceptions import BuildCancelled, FetchError, ProvisionError
from ievms.fetcher import ArtifactFetcher
from ievms.hypervisor import Hypervisor
from ievms.models import ArtifactSpec, ProvisioningRecipe, ProvisionConfig, VersionProfile, VersionTable
from ievms.recipes import build_recipe, run_recipe
from ievms.utils import ensure_directory, log, log_to
from ievms.vm import VMOrchestrator


@dataclass
class BuildResult:
    version: str
    vm_name: Optional[str] = None
    success: bool = False
    imported: bool = False
    error: Optional[str] = None


@dataclass
class BuildPlan:
    version: str
    profile: VersionProfile
    recipe: ProvisioningRecipe


def plan_builds(cfg: ProvisionConfig, table: VersionTable) -> Tuple[List[BuildPlan], List[BuildResult]]:
    """Resolve every requested version before anything is downloaded.

    Versions that cannot be built (unknown, or unavailable under the reuse
    flags) come back as failed results instead of plans.
    """
    plans: List[BuildPlan] = []
    rejected: List[BuildResult] = []
    for version in dict.fromkeys(cfg.versions):
        try:
            profile = resolve_profile(table, version, cfg)
            recipe = build_recipe(profile, cfg, table)
        except ProvisionError as exc:
            log("ERROR", f"IE {version}: {exc}")
            rejected.append(BuildResult(version=version, error=str(exc)))
            continue
        plans.append(BuildPlan(version=version, profile=profile, recipe=recipe))
    return plans, rejected


def _find_member(archive: zipfile.ZipFile, wanted: str, suffix: Optional[str] = None) -> str:
    names = [name for name in archive.namelist() if not name.endswith("/")]
    for name in names:
        if Path(name).name == wanted:
            return name
    if suffix:
        candidates = [name for name in names if name.lower().endswith(suffix)]
        if len(candidates) == 1:
            return candidates[0]
    raise FetchError(f"{archive.filename} does not contain {wanted}")


def unpack_member(archive_path: Path, member: str, target: Path, suffix: Optional[str] = None) -> Path:
    """Extract one file from a zip archive to ``target`` via a temporary file."""
    try:
        with zipfile.ZipFile(archive_path) as archive:
            name = _find_member(archive, member, suffix)
            log("INFO", f"Extracting {name} from {archive_path} to {target}")
            ensure_directory(target.parent)
            with tempfile.NamedTemporaryFile(delete=False, dir=target.parent, prefix=".part-") as tmp:
                tmp_path = Path(tmp.name)
                try:
                    with archive.open(name) as source:
                        shutil.copyfileobj(source, tmp)
                except BaseException:
                    tmp.close()
                    tmp_path.unlink(missing_ok=True)
                    raise
    except zipfile.BadZipFile as exc:
        raise FetchError(f"Failed to extract {archive_path}: {exc}") from exc
    tmp_path.replace(target)
    return target


def prefetch_shared(table: VersionTable, cfg: ProvisionConfig, fetcher: ArtifactFetcher) -> Dict[str, Path]:
    """Fetch every shared tooling artifact once, unpacking zipped drivers."""
    paths: Dict[str, Path] = {}
    for key, info in table.artifacts.items():
        spec = artifact_spec(table, key, cfg)
        with fetcher.hold(spec.destination):
            path = fetcher.require(spec)
            extract = info.get("extract")
            if extract:
                path = unpack_member(path, str(extract["member"]), cfg.home / str(extract.get("as", extract["member"])))
        paths[key] = path
    return paths


def ensure_ova(profile: VersionProfile, cfg: ProvisionConfig, fetcher: ArtifactFetcher) -> Path:
    """Return the OVA for ``profile``, downloading and unpacking its archive if needed."""
    ova = cfg.home / profile.ova_name
    # Several versions share one archive; the OVA lock keeps them from unpacking it twice.
    with fetcher.hold(ova):
        log("INFO", f"Checking for existing OVA at {ova}")
        if ova.is_file():
            return ova
        spec = ArtifactSpec(
            name="OVA ZIP",
            url=profile.url,
            destination=cfg.home / profile.archive,
            checksum=profile.checksum,
            max_attempts=cfg.download_retries,
        )
        with fetcher.hold(spec.destination):
            archive = fetcher.require(spec)
            log("INFO", f"Extracting OVA from {archive}")
            unpack_member(archive, ova.name, ova, suffix=".ova")
    return ova


def build_vm(
    version: str,
    cfg: ProvisionConfig,
    table: VersionTable,
    hypervisor: Hypervisor,
    fetcher: ArtifactFetcher,
    cancel: Optional[threading.Event] = None,
    plan: Optional[BuildPlan] = None,
) -> BuildResult:
    """Build the VM for one browser version; failures are reported, not raised."""
    result = BuildResult(version=version)
    with log_to(cfg.home / f"build_ievm_{version}.log", prefix=version):
        log("INFO", f"Building IE {version} VM")
        try:
            if plan is None:
                profile = resolve_profile(table, version, cfg)
                recipe = build_recipe(profile, cfg, table)
            else:
                profile, recipe = plan.profile, plan.recipe
            result.vm_name = profile.vm_name
            orch = VMOrchestrator(cfg, hypervisor, fetcher, cancel=cancel)
            ova = ensure_ova(profile, cfg, fetcher)
            result.imported = orch.ensure_imported(profile, ova)
            if result.imported:
                log("INFO", f"Building {profile.vm_name} VM")
                run_recipe(orch, recipe)
        except BuildCancelled as exc:
            log("WARN", str(exc))
            result.error = str(exc)
            return result
        except ProvisionError as exc:
            log("ERROR", str(exc))
            result.error = str(exc)
            return result
        result.success = True
        log("SUCCESS", f"{result.vm_name} is ready")
    return result


def build_all(
    cfg: ProvisionConfig,
    table: VersionTable,
    hypervisor: Hypervisor,
    fetcher: ArtifactFetcher,
    cancel: Optional[threading.Event] = None,
    planned: Optional[Tuple[List[BuildPlan], List[BuildResult]]] = None,
) -> List[BuildResult]:
    """Prefetch shared artifacts, then build every requested version concurrently.

    Versions rejected by ``plan_builds`` fail without downloading anything, and
    when none is left nothing is fetched at all. A failing build never stops
    its siblings. Interrupting the wait sets ``cancel`` so workers stop at
    their next poll.
    """
    if cancel is None:
        cancel = threading.Event()
    plans, rejected = planned if planned is not None else plan_builds(cfg, table)
    results: Dict[str, BuildResult] = {result.version: result for result in rejected}
    if plans:
        ensure_directory(cfg.home)
        prefetch_shared(table, cfg, fetcher)

        with ThreadPoolExecutor(max_workers=len(plans), thread_name_prefix="ievms") as pool:
            futures = [
                (plan.version, pool.submit(build_vm, plan.version, cfg, table, hypervisor, fetcher, cancel, plan))
                for plan in plans
            ]
            try:
                for version, future in futures:
                    try:
                        results[version] = future.result()
                    except Exception as exc:
                        log("ERROR", f"Unexpected error building IE {version}: {exc}")
                        results[version] = BuildResult(version=version, error=str(exc))
            except KeyboardInterrupt:
                log("WARN", "Interrupted; asking builds to stop")
                cancel.set()
                raise
    return [results[version] for version in dict.fromkeys(cfg.versions) if version in results]


def exit_code(results: List[BuildResult]) -> int:
    return 0 if all(result.success for result in results) else 1


def summarize(results: List[BuildResult]) -> None:
    for result in results:
        name = result.vm_name or f"IE {result.version}"
        if result.success:
            status = "imported and provisioned" if result.imported else "already present"
            log("SUCCESS", f"{name}: {status}")
        else:
            log("ERROR", f"{name}: {result.error}")

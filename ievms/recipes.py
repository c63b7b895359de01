"""Provisioning recipes: named step builders and the sequencer that runs them."""

from __future__ import annotations

import functools
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List
from urllib.parse import unquote, urlparse

from ievms.config import artifact_spec
from ievms.constants import (
    CONTROL_ISO_ARTIFACT,
    IEVMS_VERSION,
    SNAPSHOT_DESCRIPTION,
    SNAPSHOT_NAME,
)
from ievms.exceptions import BuildCancelled, PreconditionError, StepError
from ievms.hypervisor import bridged_nic_args
from ievms.models import (
    ArtifactSpec,
    AttachMedia,
    BestEffortGuestCommand,
    BootAndWaitForShutdown,
    CopyFromGuest,
    CopyToGuest,
    EjectMedia,
    GuestCommand,
    InstallArtifact,
    LocalAction,
    ModifyVM,
    ProvisionConfig,
    ProvisioningRecipe,
    RunTaskBatch,
    SetExtraData,
    ShutdownGuest,
    StartAndWaitReady,
    Step,
    TakeSnapshot,
    VersionProfile,
    VersionTable,
    VirtualMachineHandle,
)
from ievms.registry import rewrite_network_profiles, write_reg_file
from ievms.utils import log, vm_dir_name
from ievms.vm import VMOrchestrator

SHARE_DRIVE = "E:"
WINLOGON_KEY = "HKLM\\SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion\\Winlogon"
NETWORK_PROFILES_KEY = "HKEY_LOCAL_MACHINE\\SOFTWARE\\Microsoft\\Windows NT\\CurrentVersion\\NetworkList\\Profiles"
IE11_FIRST_RUN_KEY = "HKEY_LOCAL_MACHINE\\SOFTWARE\\Policies\\Microsoft\\Internet Explorer\\Main"
EDGE_FIRST_RUN_KEY = (
    "HKEY_CURRENT_USER\\SOFTWARE\\Classes\\Local Settings\\Software\\Microsoft\\Windows\\CurrentVersion"
    "\\AppContainer\\Storage\\microsoft.microsoftedge_8wekyb3d8bbwe\\MicrosoftEdge\\Main"
)
SELENIUM_DRIVERS = ("chromedriver", "iedriver32", "iedriver64")
FIREFOX_DIR = "%PROGRAMFILES(x86)%\\Mozilla Firefox"


@dataclass
class RecipeContext:
    profile: VersionProfile
    cfg: ProvisionConfig
    table: VersionTable

    @property
    def user_dir(self) -> str:
        return f"C:\\Users\\{self.cfg.guest_user}"

    @property
    def desktop(self) -> str:
        return f"{self.user_dir}\\Desktop"

    @property
    def vm_dir(self) -> Path:
        return self.cfg.home / vm_dir_name(self.profile.vm_name)

    def artifact(self, key: str) -> ArtifactSpec:
        return artifact_spec(self.table, key, self.cfg)

    def installer(self, params: Dict[str, Any]) -> ArtifactSpec:
        """Build the artifact for a recipe-supplied installer (``url`` plus ``md5``)."""
        if "url" not in params:
            raise PreconditionError(f"{self.profile.vm_name}: installer step needs a 'url'")
        url = str(params["url"])
        filename = unquote(Path(urlparse(url).path).name)
        return ArtifactSpec(
            name=filename,
            url=url,
            destination=self.cfg.home / filename,
            checksum=params.get("md5"),
            max_attempts=self.cfg.download_retries,
        )


StepBuilder = Callable[[RecipeContext, Dict[str, Any]], List[Step]]


def set_xp_password(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    user = ctx.cfg.guest_user
    password = ctx.cfg.guest_password
    return [
        StartAndWaitReady(),
        GuestCommand("net.exe", ["user", user, password], user="Administrator"),
        GuestCommand(
            "reg.exe",
            ["add", WINLOGON_KEY, "/f", "/v", "DefaultPassword", "/t", "REG_SZ", "/d", password],
            user="Administrator",
        ),
        GuestCommand(
            "reg.exe",
            ["add", WINLOGON_KEY, "/f", "/v", "AutoAdminLogon", "/t", "REG_SZ", "/d", "1"],
            user="Administrator",
        ),
    ]


def shutdown_xp(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    return [ShutdownGuest()]


def install_ie_xp(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    installer = ctx.installer(params)
    dest = f"C:\\Documents and Settings\\{ctx.cfg.guest_user}\\Desktop\\{installer.destination.name}"
    return [
        InstallArtifact(installer, dest, share_drive=SHARE_DRIVE),
        # The XP installers report failure even when they succeed.
        BestEffortGuestCommand(dest, ["/passive", "/norestart"]),
        ShutdownGuest(),
    ]


def boot_auto_ga(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    """Boot with the control ISO, then with the Guest Additions image.

    The control ISO arms a first-boot script that installs whatever
    additions are in the drive on the next boot; each boot ends with the
    guest powering itself off.
    """
    iso = ctx.artifact(CONTROL_ISO_ARTIFACT)
    return [
        AttachMedia(str(iso.destination), "ievms control ISO", artifact=iso),
        BootAndWaitForShutdown(),
        EjectMedia("ievms control ISO"),
        AttachMedia("additions", "Guest Additions"),
        BootAndWaitForShutdown(),
        EjectMedia("Guest Additions"),
    ]


def install_ie_win7(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    installer = ctx.installer(params)
    dest = f"{ctx.desktop}\\{installer.destination.name}"
    return [
        StartAndWaitReady(),
        InstallArtifact(installer, dest, share_drive=SHARE_DRIVE),
        RunTaskBatch([f"{dest} /passive /norestart"]),
    ]


def _registry_tweak(ctx: RecipeContext, filename: str, key: str, values: Dict[str, Any]) -> List[Step]:
    local = ctx.cfg.home / filename
    guest = f"{ctx.desktop}\\{filename}"
    return [
        LocalAction(f"write {filename}", functools.partial(write_reg_file, local, key, values)),
        StartAndWaitReady(),
        CopyToGuest(local, guest),
        RunTaskBatch([f"regedit /S {guest}"]),
    ]


def ie11_disable_first_run(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    return _registry_tweak(
        ctx, "ie11_disable_first_run_wizard.reg", IE11_FIRST_RUN_KEY, {"DisableFirstRunCustomize": 1}
    )


def edge_disable_first_run(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    return _registry_tweak(ctx, "edge_disable_first_run_wizard.reg", EDGE_FIRST_RUN_KEY, {"IE10TourNoShow": 1})


def install_java(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    jdk = ctx.artifact(params.get("artifact", "jdk"))
    dest = f"{ctx.desktop}\\{jdk.destination.name}"
    return [
        StartAndWaitReady(),
        InstallArtifact(jdk, dest),
        RunTaskBatch([f'{dest} /s ADDLOCAL="ToolsFeature,SourceFeature,PublicjreFeature"']),
    ]


def install_firefox(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    firefox = ctx.artifact(params.get("artifact", "firefox"))
    dest = f"{ctx.desktop}\\{firefox.destination.name}"
    override = f'"{FIREFOX_DIR}\\browser\\override.ini"'
    mozilla_cfg = f'"{FIREFOX_DIR}\\mozilla.cfg"'
    autoconfig = f'"{FIREFOX_DIR}\\defaults\\pref\\autoconfig.js"'
    return [
        StartAndWaitReady(),
        InstallArtifact(firefox, dest),
        RunTaskBatch(
            [
                f"start /wait {dest} -ms",
                'IF NOT DEFINED PROGRAMFILES(x86) (SET "PROGRAMFILES(x86)=%PROGRAMFILES%")',
                f"echo [XRE] >{override}",
                f"echo EnableProfileMigrator=false >>{override}",
                f"echo // required comment line >{mozilla_cfg}",
                f'echo lockPref("browser.shell.checkDefaultBrowser", false); >>{mozilla_cfg}',
                f"echo // required comment line >{autoconfig}",
                f'echo pref("general.config.filename", "mozilla.cfg"); >>{autoconfig}',
                f'echo pref("general.config.obscure_value", 0); >>{autoconfig}',
            ]
        ),
    ]


def install_chrome(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    chrome = ctx.artifact(params.get("artifact", "chrome"))
    dest = f"{ctx.desktop}\\{chrome.destination.name}"
    return [
        StartAndWaitReady(),
        InstallArtifact(chrome, dest),
        RunTaskBatch([f"start /wait msiexec /i {dest} /passive /norestart"]),
    ]


def bridge_network(ctx: RecipeContext, adapter: str) -> List[Step]:
    """Switch NIC 1 to bridged mode and mark the guest's known networks private."""
    netloc = f"{ctx.desktop}\\netloc.reg"
    exported = ctx.vm_dir / "netloc.reg.in"
    rewritten = ctx.vm_dir / "netloc.reg.out"
    return [
        ModifyVM(bridged_nic_args(adapter)),
        StartAndWaitReady(),
        RunTaskBatch([f'reg export "{NETWORK_PROFILES_KEY}" {netloc} /y']),
        StartAndWaitReady(),
        CopyFromGuest(netloc, exported),
        LocalAction("mark network locations private", functools.partial(rewrite_network_profiles, exported, rewritten)),
        CopyToGuest(rewritten, netloc),
        RunTaskBatch([f"regedit /S {netloc}"]),
    ]


def driver_files(table: VersionTable, cfg: ProvisionConfig) -> List[Path]:
    """Host paths of the unpacked Selenium driver executables."""
    files: List[Path] = []
    for key in SELENIUM_DRIVERS:
        extract = table.artifacts.get(key, {}).get("extract") or {}
        if "as" not in extract:
            raise PreconditionError(f"Artifact '{key}' must declare extract.as")
        files.append(cfg.home / str(extract["as"]))
    return files


def install_selenium(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    steps: List[Step] = []
    if ctx.cfg.bridge_adapter:
        steps.extend(bridge_network(ctx, ctx.cfg.bridge_adapter))
    else:
        log("DEBUG", f"{ctx.profile.vm_name}: no bridge adapter configured; keeping NAT networking")

    server = ctx.artifact("selenium-server")
    steps.append(StartAndWaitReady())
    steps.append(InstallArtifact(server, f"{ctx.user_dir}\\{server.destination.name}"))
    for local in driver_files(ctx.table, ctx.cfg):
        steps.append(CopyToGuest(local, f"{ctx.user_dir}\\{local.name}"))
    user_dir = ctx.user_dir
    steps.append(
        RunTaskBatch(
            [
                f"IF NOT DEFINED PROGRAMFILES(x86) (rename {user_dir}\\IEDriverServer32.exe IEDriverServer.exe) "
                f"ELSE (rename {user_dir}\\IEDriverServer64.exe IEDriverServer.exe)"
            ]
        )
    )
    return steps


def reuac(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    return [StartAndWaitReady(), RunTaskBatch(["regedit.exe /S C:\\reuac.reg"])]


def tag(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    return [SetExtraData("ievms", json.dumps({"version": IEVMS_VERSION}, separators=(",", ":")))]


def snapshot(ctx: RecipeContext, params: Dict[str, Any]) -> List[Step]:
    return [TakeSnapshot(params.get("name", SNAPSHOT_NAME), params.get("description", SNAPSHOT_DESCRIPTION))]


RECIPE_BUILDERS: Dict[str, StepBuilder] = {
    "set_xp_password": set_xp_password,
    "shutdown_xp": shutdown_xp,
    "install_ie_xp": install_ie_xp,
    "boot_auto_ga": boot_auto_ga,
    "install_ie_win7": install_ie_win7,
    "ie11_disable_first_run": ie11_disable_first_run,
    "edge_disable_first_run": edge_disable_first_run,
    "install_java": install_java,
    "install_firefox": install_firefox,
    "install_chrome": install_chrome,
    "install_selenium": install_selenium,
    "reuac": reuac,
    "tag": tag,
    "snapshot": snapshot,
}


def build_recipe(profile: VersionProfile, cfg: ProvisionConfig, table: VersionTable) -> ProvisioningRecipe:
    """Expand ``profile.recipe`` into concrete steps.

    Unknown step names are rejected here, before anything is downloaded or
    imported.
    """
    ctx = RecipeContext(profile=profile, cfg=cfg, table=table)
    recipe = ProvisioningRecipe(vm_name=profile.vm_name)
    for name, params in profile.recipe:
        builder = RECIPE_BUILDERS.get(name)
        if builder is None:
            raise PreconditionError(f"{profile.vm_name}: unknown recipe step '{name}'")
        recipe.extend(builder(ctx, params))
    return recipe


def execute_step(orch: VMOrchestrator, handle: VirtualMachineHandle, step: Step) -> None:
    if isinstance(step, BootAndWaitForShutdown):
        orch.boot_and_wait_for_shutdown(handle)
    elif isinstance(step, StartAndWaitReady):
        orch.start_and_wait_ready(handle)
    elif isinstance(step, ShutdownGuest):
        orch.shutdown_now(handle)
    elif isinstance(step, AttachMedia):
        orch.attach_media(handle, step.medium, step.label, artifact=step.artifact)
    elif isinstance(step, EjectMedia):
        orch.eject_media(handle, step.label)
    elif isinstance(step, RunTaskBatch):
        orch.run_task_batch(handle, step.lines)
    elif isinstance(step, InstallArtifact):
        orch.install_artifact(handle, step.artifact, step.guest_path, share_drive=step.share_drive)
    elif isinstance(step, CopyToGuest):
        orch.copy_to_guest(handle, step.local_path, step.guest_path)
    elif isinstance(step, CopyFromGuest):
        orch.copy_from_guest(handle, step.guest_path, step.local_path)
    elif isinstance(step, BestEffortGuestCommand):
        code = orch.guest_exec(handle, step.executable, step.args, user=step.user, check=False)
        if code != 0:
            log("WARN", f"{step.executable} exited with status {code}; continuing")
    elif isinstance(step, GuestCommand):
        orch.guest_exec(handle, step.executable, step.args, user=step.user)
    elif isinstance(step, LocalAction):
        step.action()
    elif isinstance(step, ModifyVM):
        orch.modify(handle, step.args)
    elif isinstance(step, SetExtraData):
        orch.set_extra_data(handle, step.key, step.value)
    elif isinstance(step, TakeSnapshot):
        orch.take_snapshot(handle, step.label, step.description)
    else:
        raise PreconditionError(f"Unsupported step type {type(step).__name__}")


def run_recipe(orch: VMOrchestrator, recipe: ProvisioningRecipe) -> VirtualMachineHandle:
    """Execute every step of ``recipe`` in order.

    The first failure stops the recipe with a StepError; completed steps are
    not undone. Cancellation propagates unwrapped.
    """
    handle = orch.handle(recipe.vm_name)
    total = len(recipe.steps)
    for index, step in enumerate(recipe.steps, start=1):
        description = step.describe()
        log("INFO", f"[{index}/{total}] {description}")
        try:
            execute_step(orch, handle, step)
        except BuildCancelled:
            raise
        except Exception as exc:
            log("ERROR", f"{recipe.vm_name}: step {index} ({description}) failed: {exc}")
            raise StepError(recipe.vm_name, index, description, exc) from exc
    return handle

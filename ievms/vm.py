"""VM lifecycle and guest task execution for ievms."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, Sequence

from ievms.constants import GUEST_READY_LEVEL, SCHEDULED_TASK_NAME, SHARED_FOLDER_NAME
from ievms.exceptions import HypervisorCommandError
from ievms.fetcher import ArtifactFetcher
from ievms.hypervisor import Hypervisor
from ievms.models import (
    ArtifactSpec,
    PowerState,
    ProvisionConfig,
    TaskBatch,
    VersionProfile,
    VirtualMachineHandle,
)
from ievms.utils import ensure_directory, log, poll_until


def guest_copy_path(windows_path: str) -> str:
    """Translate "C:\\Users\\IEUser\\x.exe" into the "/Users/IEUser/x.exe" form guestcontrol copies to."""
    path = windows_path.replace("\\", "/")
    if len(path) >= 2 and path[1] == ":":
        path = path[2:]
    return path


class VMOrchestrator:
    """Drive one or more VMs through power-state and guest-readiness transitions.

    The hypervisor is the source of truth: every wait re-queries it, and the
    handle's cached fields are only updated from those queries.
    """

    def __init__(
        self,
        config: ProvisionConfig,
        hypervisor: Hypervisor,
        fetcher: ArtifactFetcher,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.cfg = config
        self.hypervisor = hypervisor
        self.fetcher = fetcher
        self.cancel = cancel

    def handle(self, name: str) -> VirtualMachineHandle:
        return VirtualMachineHandle(name=name)

    def vm_dir(self, handle: VirtualMachineHandle) -> Path:
        path = self.cfg.home / handle.dir_name
        ensure_directory(path)
        return path

    def refresh(self, handle: VirtualMachineHandle) -> VirtualMachineHandle:
        handle.power_state = self.hypervisor.power_state(handle.name)
        handle.guest_level = self.hypervisor.guest_level(handle.name)
        return handle

    # --- import ----------------------------------------------------------

    def ensure_imported(self, profile: VersionProfile, ova: Path) -> bool:
        """Import ``ova`` as ``profile.vm_name`` unless a VM of that name exists.

        Returns True when an import happened.
        """
        log("INFO", f"Checking for existing {profile.vm_name} VM")
        if self.hypervisor.vm_exists(profile.vm_name):
            log("INFO", f"VM {profile.vm_name} already exists; skipping import")
            return False
        disk_path = self.cfg.home / f"{profile.vm_name}-disk1.vmdk"
        log("INFO", f"Creating {profile.vm_name} VM (disk: {disk_path})")
        self.hypervisor.import_image(ova, profile.vm_name, profile.unit, disk_path)

        log("INFO", "Adding shared folder")
        self.hypervisor.add_shared_folder(profile.vm_name, SHARED_FOLDER_NAME, self.cfg.home)

        log("INFO", "Ensuring correct boot sequence")
        self.hypervisor.set_boot_order(profile.vm_name)
        return True

    # --- power state -------------------------------------------------------

    def start(self, handle: VirtualMachineHandle) -> None:
        log("INFO", f"Starting VM {handle.name}")
        self.hypervisor.start_headless(handle.name)
        handle.power_state = PowerState.STARTING

    def await_shutdown(self, handle: VirtualMachineHandle, timeout: Optional[float] = None) -> None:
        def _query() -> PowerState:
            try:
                handle.power_state = self.hypervisor.power_state(handle.name)
            except HypervisorCommandError as exc:
                log("WARN", f"Could not query power state of {handle.name}: {exc}; retrying")
                return PowerState.UNKNOWN
            return handle.power_state

        poll_until(
            _query,
            lambda state: state is PowerState.OFF,
            interval=self.cfg.poll_interval,
            timeout=timeout if timeout is not None else self.cfg.wait_timeout,
            cancel=self.cancel,
            label=f"{handle.name} to shutdown",
        )
        log("INFO", f"{handle.name} is powered off")

    def await_guest_ready(self, handle: VirtualMachineHandle, timeout: Optional[float] = None) -> None:
        def _query() -> int:
            try:
                handle.guest_level = self.hypervisor.guest_level(handle.name)
            except HypervisorCommandError as exc:
                log("WARN", f"Could not query guest level of {handle.name}: {exc}; retrying")
                return 0
            return handle.guest_level

        poll_until(
            _query,
            lambda level: level >= GUEST_READY_LEVEL,
            interval=self.cfg.poll_interval,
            timeout=timeout if timeout is not None else self.cfg.wait_timeout,
            cancel=self.cancel,
            label=f"{handle.name} to be available for guestcontrol",
        )
        handle.power_state = PowerState.RUNNING
        log("INFO", f"{handle.name} is ready for guestcontrol")

    def start_and_wait_ready(self, handle: VirtualMachineHandle) -> None:
        self.start(handle)
        self.await_guest_ready(handle)

    def boot_and_wait_for_shutdown(self, handle: VirtualMachineHandle) -> None:
        self.start(handle)
        self.await_shutdown(handle)

    # --- media -------------------------------------------------------------

    def attach_media(
        self,
        handle: VirtualMachineHandle,
        medium: str,
        label: str = "",
        artifact: Optional[ArtifactSpec] = None,
    ) -> None:
        log("INFO", f"Attaching {label or medium}")
        if artifact is None:
            self.hypervisor.attach_media(handle.name, medium)
            return
        with self.fetcher.hold(artifact.destination):
            local = self.fetcher.require(artifact)
            self.hypervisor.attach_media(handle.name, str(local))

    def eject_media(self, handle: VirtualMachineHandle, label: str = "") -> None:
        log("INFO", f"Ejecting {label or 'dvd'}")
        self.hypervisor.eject_media(handle.name)

    # --- guest control -----------------------------------------------------

    def guest_exec(
        self,
        handle: VirtualMachineHandle,
        executable: str,
        args: Sequence[str] = (),
        user: Optional[str] = None,
        check: bool = True,
    ) -> int:
        log("INFO", f"guest_exec {executable} {' '.join(args)}")
        code = self.hypervisor.run_in_guest(
            handle.name,
            user or self.cfg.guest_user,
            self.cfg.guest_password,
            executable,
            list(args),
        )
        if check and code != 0:
            raise HypervisorCommandError(
                f"{executable} exited with status {code} in {handle.name}",
                cmd=[executable, *args],
                returncode=code,
            )
        return code

    def copy_to_guest(self, handle: VirtualMachineHandle, local_path: Path, guest_path: str) -> None:
        log("INFO", f"Copying {local_path} to {guest_path}")
        self.hypervisor.copy_to_guest(
            handle.name,
            self.cfg.guest_user,
            self.cfg.guest_password,
            local_path,
            guest_copy_path(guest_path),
        )

    def copy_from_guest(self, handle: VirtualMachineHandle, guest_path: str, local_path: Path) -> None:
        log("INFO", f"Copying {guest_path} from {handle.name} to {local_path}")
        ensure_directory(local_path.parent)
        self.hypervisor.copy_from_guest(
            handle.name,
            self.cfg.guest_user,
            self.cfg.guest_password,
            guest_copy_path(guest_path),
            local_path,
        )

    def install_artifact(
        self,
        handle: VirtualMachineHandle,
        artifact: ArtifactSpec,
        guest_path: str,
        share_drive: Optional[str] = None,
    ) -> None:
        """Fetch ``artifact`` and place it at ``guest_path`` inside the guest.

        With ``share_drive`` the file is copied from the automounted shared
        folder by the guest itself, which is the only route older guests support.
        """
        with self.fetcher.hold(artifact.destination):
            local = self.fetcher.require(artifact)
            if share_drive:
                log("INFO", f"Copying {local.name} to {guest_path}")
                self.guest_exec(handle, "cmd.exe", ["/c", "copy", f"{share_drive}\\{local.name}", guest_path])
            else:
                self.copy_to_guest(handle, local, guest_path)

    def run_task_batch(self, handle: VirtualMachineHandle, lines: Sequence[str]) -> None:
        """Run ``lines`` through the pre-registered scheduled task and wait for the guest to power off.

        Returning means the guest shut down after attempting every line; it
        says nothing about whether each line succeeded.
        """
        batch = TaskBatch(lines=list(lines))
        task_file = self.vm_dir(handle) / "task.bat"
        task_file.write_bytes(batch.render().encode("utf-8"))
        self.copy_to_guest(handle, task_file, f"C:\\Users\\{self.cfg.guest_user}\\{SCHEDULED_TASK_NAME}.bat")
        # schtasks returns as soon as the task is queued, not when it finishes.
        self.guest_exec(handle, "schtasks.exe", ["/run", "/tn", SCHEDULED_TASK_NAME])
        self.await_shutdown(handle)

    def shutdown_now(self, handle: VirtualMachineHandle) -> None:
        log("INFO", f"Shutting down {handle.name}")
        self.guest_exec(handle, "shutdown.exe", ["/s", "/f", "/t", "0"], check=False)
        self.await_shutdown(handle)

    # --- metadata ----------------------------------------------------------

    def modify(self, handle: VirtualMachineHandle, args: Sequence[str]) -> None:
        self.hypervisor.modify_vm(handle.name, list(args))

    def set_extra_data(self, handle: VirtualMachineHandle, key: str, value: str) -> None:
        log("INFO", f"Tagging {handle.name} with {key}={value}")
        self.hypervisor.set_extra_data(handle.name, key, value)

    def take_snapshot(self, handle: VirtualMachineHandle, label: str, description: str = "") -> None:
        log("INFO", f"Creating {label} snapshot of {handle.name}")
        self.hypervisor.take_snapshot(handle.name, label, description)

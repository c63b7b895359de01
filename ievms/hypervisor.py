"""Hypervisor command interface and its VirtualBox implementation."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List, Sequence

from ievms.constants import STORAGE_CONTROLLER
from ievms.exceptions import HypervisorCommandError
from ievms.models import PowerState
from ievms.utils import log, run


class Hypervisor:
    """Black-box operations the orchestrator needs from a hypervisor."""

    def vm_exists(self, name: str) -> bool:
        raise NotImplementedError

    def import_image(self, archive: Path, name: str, unit: int, disk: Path) -> None:
        raise NotImplementedError

    def start_headless(self, name: str) -> None:
        raise NotImplementedError

    def power_state(self, name: str) -> PowerState:
        raise NotImplementedError

    def guest_level(self, name: str) -> int:
        raise NotImplementedError

    def attach_media(self, name: str, medium: str) -> None:
        raise NotImplementedError

    def eject_media(self, name: str) -> None:
        raise NotImplementedError

    def run_in_guest(self, name: str, user: str, password: str, executable: str, args: Sequence[str]) -> int:
        raise NotImplementedError

    def copy_to_guest(self, name: str, user: str, password: str, local_path: Path, remote_path: str) -> None:
        raise NotImplementedError

    def copy_from_guest(self, name: str, user: str, password: str, remote_path: str, local_path: Path) -> None:
        raise NotImplementedError

    def set_extra_data(self, name: str, key: str, value: str) -> None:
        raise NotImplementedError

    def take_snapshot(self, name: str, label: str, description: str) -> None:
        raise NotImplementedError

    def modify_vm(self, name: str, args: Sequence[str]) -> None:
        raise NotImplementedError

    def add_shared_folder(self, name: str, share: str, host_path: Path) -> None:
        raise NotImplementedError

    def version(self) -> str:
        raise NotImplementedError

    def list_extpacks(self) -> str:
        raise NotImplementedError

    def install_extpack(self, path: Path) -> None:
        raise NotImplementedError

    def set_boot_order(self, name: str) -> None:
        self.modify_vm(name, boot_order_args())

    def set_bridged_nic(self, name: str, adapter: str) -> None:
        self.modify_vm(name, bridged_nic_args(adapter))


class VBoxManage(Hypervisor):
    """Drive VirtualBox through the ``VBoxManage`` command line."""

    def __init__(self, binary: str = "VBoxManage") -> None:
        self.binary = binary

    def _vbox(self, args: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
        cmd = [self.binary, *args]
        try:
            return run(cmd, check=check, capture_output=True, **kwargs)
        except FileNotFoundError as exc:
            raise HypervisorCommandError(
                f"VirtualBox command line utilities are not installed ({self.binary} not found)",
                cmd=cmd,
            ) from exc
        except subprocess.CalledProcessError as exc:
            output = (exc.stderr or exc.stdout or "").strip()
            raise HypervisorCommandError(
                f"VBoxManage {' '.join(args[:2])} failed ({exc.returncode}): {output}",
                cmd=cmd,
                returncode=exc.returncode,
                output=output,
            ) from exc

    def version(self) -> str:
        return self._vbox(["-v"]).stdout.strip()

    def list_extpacks(self) -> str:
        return self._vbox(["list", "extpacks"]).stdout

    def install_extpack(self, path: Path) -> None:
        log("INFO", f"Installing extension pack from {path}")
        self._vbox(["extpack", "install", "--replace", str(path)], input="y\n")

    def vm_exists(self, name: str) -> bool:
        return self._vbox(["showvminfo", name], check=False).returncode == 0

    def vm_info(self, name: str) -> Dict[str, str]:
        out = self._vbox(["showvminfo", name, "--machinereadable"]).stdout
        info: Dict[str, str] = {}
        for line in out.splitlines():
            if "=" not in line:
                continue
            key, val = line.split("=", 1)
            info[key.strip().strip('"')] = val.strip().strip('"')
        return info

    def power_state(self, name: str) -> PowerState:
        return PowerState.from_vbox(self.vm_info(name).get("VMState", ""))

    def guest_level(self, name: str) -> int:
        raw = self.vm_info(name).get("GuestAdditionsRunLevel", "0")
        try:
            return int(raw)
        except ValueError:
            return 0

    def import_image(self, archive: Path, name: str, unit: int, disk: Path) -> None:
        self._vbox(
            [
                "import",
                str(archive),
                "--vsys",
                "0",
                "--vmname",
                name,
                "--unit",
                str(unit),
                "--disk",
                str(disk),
            ]
        )

    def start_headless(self, name: str) -> None:
        self._vbox(["startvm", name, "--type", "headless"])

    def attach_media(self, name: str, medium: str) -> None:
        self._storage_attach(name, medium)

    def eject_media(self, name: str) -> None:
        self._storage_attach(name, "emptydrive")

    def _storage_attach(self, name: str, medium: str) -> None:
        self._vbox(
            [
                "storageattach",
                name,
                "--storagectl",
                STORAGE_CONTROLLER,
                "--port",
                "1",
                "--device",
                "0",
                "--type",
                "dvddrive",
                "--medium",
                medium,
            ]
        )

    def run_in_guest(self, name: str, user: str, password: str, executable: str, args: Sequence[str]) -> int:
        # argv[0] is repeated after "--", as guestcontrol expects.
        result = self._vbox(
            [
                "guestcontrol",
                name,
                "run",
                "--username",
                user,
                "--password",
                password,
                "--exe",
                executable,
                "--",
                Path(executable.replace("\\", "/")).name,
                *args,
            ],
            check=False,
        )
        if result.returncode != 0:
            log("DEBUG", f"guestcontrol run {executable} exited {result.returncode}: {(result.stderr or '').strip()}")
        return result.returncode

    def copy_to_guest(self, name: str, user: str, password: str, local_path: Path, remote_path: str) -> None:
        self._vbox(
            [
                "guestcontrol",
                name,
                "copyto",
                "--username",
                user,
                "--password",
                password,
                str(local_path),
                remote_path,
            ]
        )

    def copy_from_guest(self, name: str, user: str, password: str, remote_path: str, local_path: Path) -> None:
        self._vbox(
            [
                "guestcontrol",
                name,
                "copyfrom",
                "--username",
                user,
                "--password",
                password,
                remote_path,
                str(local_path),
            ]
        )

    def set_extra_data(self, name: str, key: str, value: str) -> None:
        self._vbox(["setextradata", name, key, value])

    def take_snapshot(self, name: str, label: str, description: str) -> None:
        self._vbox(["snapshot", name, "take", label, "--description", description])

    def modify_vm(self, name: str, args: Sequence[str]) -> None:
        self._vbox(["modifyvm", name, *args])

    def add_shared_folder(self, name: str, share: str, host_path: Path) -> None:
        self._vbox(["sharedfolder", "add", name, "--automount", "--name", share, "--hostpath", str(host_path)])


def bridged_nic_args(adapter: str) -> List[str]:
    return ["--nic1", "bridged", "--bridgeadapter1", adapter]


def boot_order_args() -> List[str]:
    return ["--boot1", "dvd", "--boot2", "disk"]


"""Shared test fixtures: a scripted hypervisor and an in-memory download transport."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from ievms.exceptions import TransientNetworkError
from ievms.fetcher import ArtifactFetcher
from ievms.hypervisor import Hypervisor
from ievms.models import PowerState, ProvisionConfig
from ievms.vm import VMOrchestrator


class FakeHypervisor(Hypervisor):
    """In-memory hypervisor.

    A started guest reports RUNNING for ``polls_until_off`` power-state
    queries after it is started or asked to run a task, then OFF. Its guest
    level is 3 while running unless ``level_script`` says otherwise.
    """

    def __init__(self, existing: Sequence[str] = (), polls_until_off: int = 1) -> None:
        self.calls: List[tuple] = []
        self.existing = set(existing)
        self.polls_until_off = polls_until_off
        self.level_script: Dict[str, List[int]] = {}
        self.exit_codes: Dict[str, int] = {}
        self.failures: Dict[str, Exception] = {}
        self.guest_files: Dict[str, bytes] = {}
        self.copied_to: Dict[str, bytes] = {}
        self.extpacks = "Extension Packs: 0\n"
        self.vbox_version = "7.0.14r161095"
        self._remaining: Dict[str, int] = {}

    def _record(self, op: str, *args) -> None:
        self.calls.append((op, *args))
        exc = self.failures.get(op)
        if exc is not None:
            raise exc

    def ops(self, name: Optional[str] = None) -> List[str]:
        """Operation names in call order, without the polling queries."""
        return [
            call[0]
            for call in self.calls
            if call[0] not in ("power_state", "guest_level") and (name is None or call[1] == name)
        ]

    def guest_commands(self) -> List[tuple]:
        return [call[1:] for call in self.calls if call[0] == "run_in_guest"]

    def vm_exists(self, name):
        self._record("vm_exists", name)
        return name in self.existing

    def import_image(self, archive, name, unit, disk):
        self._record("import_image", name, Path(archive), unit, Path(disk))
        self.existing.add(name)

    def start_headless(self, name):
        self._record("start_headless", name)
        self._remaining[name] = self.polls_until_off

    def power_state(self, name):
        self.calls.append(("power_state", name))
        remaining = self._remaining.get(name, 0)
        if remaining > 0:
            self._remaining[name] = remaining - 1
            return PowerState.RUNNING
        self._remaining.pop(name, None)
        return PowerState.OFF

    def guest_level(self, name):
        self.calls.append(("guest_level", name))
        script = self.level_script.get(name)
        if script:
            return script.pop(0) if len(script) > 1 else script[0]
        return 3 if name in self._remaining else 0

    def attach_media(self, name, medium):
        self._record("attach_media", name, medium)

    def eject_media(self, name):
        self._record("eject_media", name)

    def run_in_guest(self, name, user, password, executable, args):
        self._record("run_in_guest", name, user, executable, list(args))
        if executable in ("schtasks.exe", "shutdown.exe"):
            self._remaining[name] = self.polls_until_off
        return self.exit_codes.get(executable, 0)

    def copy_to_guest(self, name, user, password, local_path, remote_path):
        self._record("copy_to_guest", name, Path(local_path), remote_path)
        self.copied_to[remote_path] = Path(local_path).read_bytes()

    def copy_from_guest(self, name, user, password, remote_path, local_path):
        self._record("copy_from_guest", name, remote_path, Path(local_path))
        Path(local_path).write_bytes(self.guest_files.get(remote_path, b""))

    def set_extra_data(self, name, key, value):
        self._record("set_extra_data", name, key, value)

    def take_snapshot(self, name, label, description):
        self._record("take_snapshot", name, label, description)

    def modify_vm(self, name, args):
        self._record("modify_vm", name, list(args))

    def add_shared_folder(self, name, share, host_path):
        self._record("add_shared_folder", name, share, Path(host_path))

    def version(self):
        self.calls.append(("version",))
        return self.vbox_version

    def list_extpacks(self):
        self.calls.append(("list_extpacks",))
        return self.extpacks

    def install_extpack(self, path):
        self.calls.append(("install_extpack", Path(path)))


class FakeTransport:
    """Download transport that serves canned payloads.

    ``routes`` maps a URL to its payload; otherwise queued ``payloads`` are
    served in order, the last one repeating. A payload that is an exception
    is raised instead of written.
    """

    def __init__(self, *payloads, routes: Optional[Dict[str, object]] = None) -> None:
        self.payloads = list(payloads)
        self.routes = dict(routes or {})
        self.calls: List[tuple] = []

    def __call__(self, url, destination, headers=None):
        self.calls.append((url, Path(destination), headers))
        if url in self.routes:
            payload = self.routes[url]
        elif self.payloads:
            payload = self.payloads.pop(0) if len(self.payloads) > 1 else self.payloads[0]
        else:
            raise TransientNetworkError(f"no route for {url}")
        if isinstance(payload, BaseException):
            raise payload
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        Path(destination).write_bytes(payload)

    def urls(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def provision_config(tmp_path) -> ProvisionConfig:
    """Return a ProvisionConfig rooted in a temporary home with no polling delay."""
    home = tmp_path / "ievms"
    home.mkdir()
    return ProvisionConfig(
        home=home,
        versions=["9"],
        guest_user="IEUser",
        guest_password="Passw0rd!",
        poll_interval=0,
        download_retries=3,
    )


@pytest.fixture
def fake_hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport(b"payload")


@pytest.fixture
def orchestrator(provision_config, fake_hypervisor, fake_transport) -> VMOrchestrator:
    return VMOrchestrator(provision_config, fake_hypervisor, ArtifactFetcher(transport=fake_transport))

"""Tests for ievms.vm module (power-state waits, task batches, guest copies)."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from ievms.exceptions import BuildCancelled, HypervisorCommandError, WaitTimeout
from ievms.fetcher import ArtifactFetcher
from ievms.models import ArtifactSpec, PowerState, VersionProfile
from ievms.vm import VMOrchestrator, guest_copy_path

from conftest import FakeHypervisor, FakeTransport


def _profile(vm_name="IE9 - Win7", unit=11):
    return VersionProfile(
        version="9",
        vm_name=vm_name,
        os="Win7",
        archive="IE9_Win7.zip",
        url="http://example.com/IE9_Win7.zip",
        checksum=None,
        unit=unit,
        recipe=[],
    )


class FlakyQueryHypervisor(FakeHypervisor):
    """Fails the first ``failing_polls`` state queries the way a busy showvminfo does."""

    def __init__(self, failing_polls: int) -> None:
        super().__init__()
        self.failing_polls = failing_polls

    def _maybe_fail(self, op, name):
        if self.failing_polls > 0:
            self.failing_polls -= 1
            self.calls.append((op, name))
            raise HypervisorCommandError(f"VBoxManage showvminfo {name} failed", returncode=1)

    def power_state(self, name):
        self._maybe_fail("power_state", name)
        return super().power_state(name)

    def guest_level(self, name):
        self._maybe_fail("guest_level", name)
        return super().guest_level(name)


class TestGuestCopyPath:
    def test_strips_drive_and_flips_separators(self):
        assert guest_copy_path("C:\\Users\\IEUser\\ievms.bat") == "/Users/IEUser/ievms.bat"

    def test_relative_path_untouched(self):
        assert guest_copy_path("Desktop\\x.exe") == "Desktop/x.exe"


class TestEnsureImported:
    def test_imports_and_configures_new_vm(self, orchestrator, fake_hypervisor, provision_config):
        ova = provision_config.home / "IE9 - Win7.ova"

        assert orchestrator.ensure_imported(_profile(), ova) is True

        home = provision_config.home
        assert fake_hypervisor.calls[1] == ("import_image", "IE9 - Win7", ova, 11, home / "IE9 - Win7-disk1.vmdk")
        assert ("add_shared_folder", "IE9 - Win7", "ievms", home) in fake_hypervisor.calls
        assert ("modify_vm", "IE9 - Win7", ["--boot1", "dvd", "--boot2", "disk"]) in fake_hypervisor.calls

    def test_existing_vm_is_left_alone(self, provision_config):
        hypervisor = FakeHypervisor(existing=["IE9 - Win7"])
        orch = VMOrchestrator(provision_config, hypervisor, ArtifactFetcher(FakeTransport(b"")))

        assert orch.ensure_imported(_profile(), provision_config.home / "IE9 - Win7.ova") is False
        assert orch.ensure_imported(_profile(), provision_config.home / "IE9 - Win7.ova") is False
        assert hypervisor.ops() == ["vm_exists", "vm_exists"]


class TestWaits:
    def test_guest_ready_after_fourth_poll(self, orchestrator, fake_hypervisor):
        fake_hypervisor.level_script["IE9 - Win7"] = [0, 0, 1, 3]
        handle = orchestrator.handle("IE9 - Win7")

        orchestrator.await_guest_ready(handle)

        polls = [call for call in fake_hypervisor.calls if call[0] == "guest_level"]
        assert len(polls) == 4
        assert handle.guest_level == 3
        assert handle.power_state is PowerState.RUNNING

    def test_await_shutdown_polls_until_off(self, orchestrator, fake_hypervisor):
        fake_hypervisor.polls_until_off = 3
        handle = orchestrator.handle("IE9 - Win7")

        orchestrator.boot_and_wait_for_shutdown(handle)

        polls = [call for call in fake_hypervisor.calls if call[0] == "power_state"]
        assert len(polls) == 4
        assert handle.power_state is PowerState.OFF

    def test_failed_state_query_is_polled_again(self, provision_config):
        hypervisor = FlakyQueryHypervisor(failing_polls=2)
        orch = VMOrchestrator(provision_config, hypervisor, ArtifactFetcher(FakeTransport(b"")))
        handle = orch.handle("IE9 - Win7")

        orch.boot_and_wait_for_shutdown(handle)

        polls = [call for call in hypervisor.calls if call[0] == "power_state"]
        assert len(polls) == 4
        assert handle.power_state is PowerState.OFF

    def test_failed_level_query_is_polled_again(self, provision_config):
        hypervisor = FlakyQueryHypervisor(failing_polls=1)
        hypervisor.level_script["IE9 - Win7"] = [3]
        orch = VMOrchestrator(provision_config, hypervisor, ArtifactFetcher(FakeTransport(b"")))
        handle = orch.handle("IE9 - Win7")

        orch.await_guest_ready(handle)

        assert len([call for call in hypervisor.calls if call[0] == "guest_level"]) == 2
        assert handle.guest_level == 3

    def test_persistent_query_failure_still_times_out(self, provision_config):
        provision_config.wait_timeout = 0.01
        provision_config.poll_interval = 0.005
        hypervisor = FlakyQueryHypervisor(failing_polls=10**9)
        orch = VMOrchestrator(provision_config, hypervisor, ArtifactFetcher(FakeTransport(b"")))

        with pytest.raises(WaitTimeout):
            orch.await_shutdown(orch.handle("IE9 - Win7"))

    def test_start_does_not_wait(self, orchestrator, fake_hypervisor):
        handle = orchestrator.handle("IE9 - Win7")
        orchestrator.start(handle)
        assert fake_hypervisor.calls == [("start_headless", "IE9 - Win7")]
        assert handle.power_state is PowerState.STARTING

    def test_timeout_raises(self, provision_config, fake_hypervisor):
        provision_config.wait_timeout = 0.01
        provision_config.poll_interval = 0.005
        fake_hypervisor.level_script["IE9 - Win7"] = [0]
        orch = VMOrchestrator(provision_config, fake_hypervisor, ArtifactFetcher(FakeTransport(b"")))

        with pytest.raises(WaitTimeout, match="guestcontrol"):
            orch.await_guest_ready(orch.handle("IE9 - Win7"))

    def test_cancel_interrupts_wait(self, provision_config, fake_hypervisor):
        fake_hypervisor.polls_until_off = 10**9
        cancel = threading.Event()
        orch = VMOrchestrator(provision_config, fake_hypervisor, ArtifactFetcher(FakeTransport(b"")), cancel=cancel)
        handle = orch.handle("IE9 - Win7")
        orch.start(handle)
        errors = []

        def _wait():
            try:
                orch.await_shutdown(handle)
            except BuildCancelled as exc:
                errors.append(exc)

        provision_config.poll_interval = 0.01
        worker = threading.Thread(target=_wait)
        worker.start()
        cancel.set()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert len(errors) == 1


class TestRunTaskBatch:
    def test_writes_crlf_batch_and_triggers_task(self, orchestrator, fake_hypervisor, provision_config):
        handle = orchestrator.handle("IE9 - Win7")

        orchestrator.run_task_batch(handle, ["echo one", "echo two"])

        task = provision_config.home / "IE9_Win7" / "task.bat"
        assert task.read_bytes() == b"echo one\r\necho two\r\nshutdown.exe /s /f /t 0\r\n"
        assert fake_hypervisor.copied_to["/Users/IEUser/ievms.bat"] == task.read_bytes()
        assert fake_hypervisor.guest_commands() == [
            ("IE9 - Win7", "IEUser", "schtasks.exe", ["/run", "/tn", "ievms"])
        ]
        assert handle.power_state is PowerState.OFF

    def test_blocks_until_guest_is_off(self, provision_config):
        hypervisor = FakeHypervisor()
        released = threading.Event()
        original = hypervisor.power_state

        def gated_power_state(name):
            if not released.is_set():
                hypervisor.calls.append(("power_state", name))
                return PowerState.RUNNING
            return original(name)

        hypervisor.power_state = gated_power_state
        provision_config.poll_interval = 0.005
        orch = VMOrchestrator(provision_config, hypervisor, ArtifactFetcher(FakeTransport(b"")))
        handle = orch.handle("IE9 - Win7")
        finished = threading.Event()
        worker = threading.Thread(target=lambda: (orch.run_task_batch(handle, ["echo hi"]), finished.set()))
        worker.start()

        assert not finished.wait(0.1)
        released.set()
        worker.join(timeout=5)
        assert finished.is_set()

    def test_failed_trigger_is_fatal(self, orchestrator, fake_hypervisor):
        fake_hypervisor.exit_codes["schtasks.exe"] = 1
        with pytest.raises(HypervisorCommandError, match="schtasks.exe exited with status 1"):
            orchestrator.run_task_batch(orchestrator.handle("IE9 - Win7"), ["echo hi"])


class TestGuestCommands:
    def test_guest_exec_checks_exit_code(self, orchestrator, fake_hypervisor):
        fake_hypervisor.exit_codes["net.exe"] = 2
        with pytest.raises(HypervisorCommandError) as exc:
            orchestrator.guest_exec(orchestrator.handle("IE6 - WinXP"), "net.exe", ["user"])
        assert exc.value.returncode == 2

    def test_guest_exec_unchecked_returns_code(self, orchestrator, fake_hypervisor):
        fake_hypervisor.exit_codes["setup.exe"] = 5
        assert orchestrator.guest_exec(orchestrator.handle("x"), "setup.exe", check=False) == 5

    def test_guest_exec_user_override(self, orchestrator, fake_hypervisor):
        orchestrator.guest_exec(orchestrator.handle("x"), "net.exe", ["user"], user="Administrator")
        assert fake_hypervisor.guest_commands()[0][1] == "Administrator"

    def test_install_artifact_via_share_drive(self, orchestrator, fake_hypervisor, provision_config):
        spec = ArtifactSpec(name="IE8.exe", url="http://example.com/IE8.exe", destination=provision_config.home / "IE8.exe")
        orchestrator.install_artifact(orchestrator.handle("IE8 - WinXP"), spec, "C:\\Desktop\\IE8.exe", share_drive="E:")

        assert fake_hypervisor.guest_commands() == [
            ("IE8 - WinXP", "IEUser", "cmd.exe", ["/c", "copy", "E:\\IE8.exe", "C:\\Desktop\\IE8.exe"])
        ]

    def test_install_artifact_via_copyto(self, orchestrator, fake_hypervisor, provision_config):
        spec = ArtifactSpec(name="jdk", url="http://example.com/jdk.exe", destination=provision_config.home / "jdk.exe")
        orchestrator.install_artifact(orchestrator.handle("IE9 - Win7"), spec, "C:\\Users\\IEUser\\Desktop\\jdk.exe")

        assert fake_hypervisor.copied_to["/Users/IEUser/Desktop/jdk.exe"] == b"payload"

    def test_attach_artifact_media_fetches_first(self, orchestrator, fake_hypervisor, provision_config):
        iso = ArtifactSpec(name="iso", url="http://example.com/c.iso", destination=provision_config.home / "c.iso")
        orchestrator.attach_media(orchestrator.handle("IE9 - Win7"), str(iso.destination), "iso", artifact=iso)

        assert iso.destination.exists()
        assert fake_hypervisor.calls == [("attach_media", "IE9 - Win7", str(iso.destination))]

    def test_copy_from_guest_creates_parent(self, orchestrator, fake_hypervisor, provision_config):
        fake_hypervisor.guest_files["/Users/IEUser/Desktop/netloc.reg"] = b"data"
        target = provision_config.home / "IE9_Win7" / "netloc.reg.in"

        orchestrator.copy_from_guest(orchestrator.handle("IE9 - Win7"), "C:\\Users\\IEUser\\Desktop\\netloc.reg", target)

        assert target.read_bytes() == b"data"

    def test_shutdown_now_ignores_exit_code(self, orchestrator, fake_hypervisor):
        fake_hypervisor.exit_codes["shutdown.exe"] = 1
        handle = orchestrator.handle("IE6 - WinXP")
        orchestrator.shutdown_now(handle)
        assert handle.power_state is PowerState.OFF

    def test_vm_dir_uses_underscore_name(self, orchestrator, provision_config):
        path = orchestrator.vm_dir(orchestrator.handle("MSEdge - Win10"))
        assert path == provision_config.home / "MSEdge_Win10"
        assert Path(path).is_dir()

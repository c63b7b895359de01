"""Data models for ievms."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ievms.constants import (
    DEFAULT_DOWNLOAD_RETRIES,
    DEFAULT_GUEST_PASSWORD,
    DEFAULT_GUEST_USER,
    DEFAULT_POLL_INTERVAL,
    MD5_RE,
    SHUTDOWN_COMMAND,
)
from ievms.exceptions import FetchError, PreconditionError
from ievms.utils import vm_dir_name


@dataclass
class ProvisionConfig:
    home: Path
    versions: List[str]
    reuse_xp: bool = True
    reuse_win7: bool = True
    guest_user: str = DEFAULT_GUEST_USER
    guest_password: str = DEFAULT_GUEST_PASSWORD
    poll_interval: float = DEFAULT_POLL_INTERVAL
    wait_timeout: Optional[float] = None
    download_retries: int = DEFAULT_DOWNLOAD_RETRIES
    vboxmanage: str = "VBoxManage"
    bridge_adapter: Optional[str] = None
    config_path: Optional[Path] = None


@dataclass
class ArtifactSpec:
    name: str
    url: str
    destination: Path
    checksum: Optional[str] = None
    max_attempts: int = DEFAULT_DOWNLOAD_RETRIES
    headers: Dict[str, str] = field(default_factory=dict)
    always_refresh: bool = False

    def __post_init__(self):
        self.destination = Path(self.destination)
        if self.checksum is not None:
            self.checksum = self.checksum.strip().lower()
            if not MD5_RE.match(self.checksum):
                raise PreconditionError(f"Artifact '{self.name}' has an invalid MD5 checksum '{self.checksum}'")
        if self.max_attempts < 1:
            raise PreconditionError(f"Artifact '{self.name}' needs at least one attempt (got {self.max_attempts})")


@dataclass
class FetchOutcome:
    spec: ArtifactSpec
    success: bool
    attempts: int
    reason: Optional[str] = None

    @property
    def path(self) -> Path:
        return self.spec.destination

    def raise_for_failure(self) -> Path:
        if not self.success:
            raise FetchError(f"Failed to fetch {self.spec.name} from {self.spec.url}: {self.reason}")
        return self.path


class PowerState(enum.Enum):
    OFF = "off"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    UNKNOWN = "unknown"

    @classmethod
    def from_vbox(cls, raw: str) -> "PowerState":
        value = raw.strip().strip('"').lower()
        if value in {"poweroff", "aborted", "saved", "powered off"}:
            return cls.OFF
        if value in {"starting", "restoring"}:
            return cls.STARTING
        if value == "running":
            return cls.RUNNING
        if value == "paused":
            return cls.PAUSED
        if value in {"stopping", "saving"}:
            return cls.STOPPING
        return cls.UNKNOWN


@dataclass
class VirtualMachineHandle:
    name: str
    power_state: PowerState = PowerState.UNKNOWN
    guest_level: int = 0

    @property
    def dir_name(self) -> str:
        return vm_dir_name(self.name)


@dataclass
class TaskBatch:
    lines: List[str]

    def render(self) -> str:
        return "".join(f"{line}\r\n" for line in [*self.lines, SHUTDOWN_COMMAND])


# --- Recipe steps ---------------------------------------------------------


@dataclass
class Step:
    def describe(self) -> str:
        return type(self).__name__


@dataclass
class BootAndWaitForShutdown(Step):
    def describe(self) -> str:
        return "boot and wait for shutdown"


@dataclass
class StartAndWaitReady(Step):
    def describe(self) -> str:
        return "boot and wait for guest control"


@dataclass
class ShutdownGuest(Step):
    def describe(self) -> str:
        return "shut down guest"


@dataclass
class AttachMedia(Step):
    """Insert ``medium`` into the DVD drive.

    When ``artifact`` is set the medium is that artifact's local copy, fetched
    (or verified) before attaching.
    """

    medium: str
    label: str = ""
    artifact: Optional[ArtifactSpec] = None

    def describe(self) -> str:
        return f"attach {self.label or self.medium}"


@dataclass
class EjectMedia(Step):
    label: str = ""

    def describe(self) -> str:
        return f"eject {self.label or 'dvd'}"


@dataclass
class RunTaskBatch(Step):
    lines: List[str]

    def describe(self) -> str:
        first = self.lines[0] if self.lines else "shutdown"
        return f"run task batch ({first})"


@dataclass
class InstallArtifact(Step):
    """Fetch an artifact on the host and copy it into the guest."""

    artifact: ArtifactSpec
    guest_path: str
    share_drive: Optional[str] = None

    def describe(self) -> str:
        return f"install {self.artifact.name} to {self.guest_path}"


@dataclass
class CopyToGuest(Step):
    local_path: Path
    guest_path: str

    def describe(self) -> str:
        return f"copy {self.local_path} to {self.guest_path}"


@dataclass
class CopyFromGuest(Step):
    guest_path: str
    local_path: Path

    def describe(self) -> str:
        return f"copy {self.guest_path} from guest to {self.local_path}"


@dataclass
class GuestCommand(Step):
    executable: str
    args: List[str] = field(default_factory=list)
    user: Optional[str] = None

    def describe(self) -> str:
        return f"run {self.executable} {' '.join(self.args)}".strip()


@dataclass
class BestEffortGuestCommand(GuestCommand):
    """A guest command whose exit status is ignored (e.g. IE installers on XP)."""

    def describe(self) -> str:
        return f"{super().describe()} (best effort)"


@dataclass
class LocalAction(Step):
    label: str
    action: Callable[[], Any]

    def describe(self) -> str:
        return self.label


@dataclass
class ModifyVM(Step):
    args: List[str]

    def describe(self) -> str:
        return f"modifyvm {' '.join(self.args)}"


@dataclass
class SetExtraData(Step):
    key: str
    value: str

    def describe(self) -> str:
        return f"set extra data {self.key}"


@dataclass
class TakeSnapshot(Step):
    label: str
    description: str = ""

    def describe(self) -> str:
        return f"snapshot '{self.label}'"


@dataclass
class ProvisioningRecipe:
    vm_name: str
    steps: List[Step] = field(default_factory=list)

    def extend(self, steps: List[Step]) -> "ProvisioningRecipe":
        self.steps.extend(steps)
        return self


# --- Version table --------------------------------------------------------

RecipeEntry = Tuple[str, Dict[str, Any]]


@dataclass
class VersionProfile:
    version: str
    vm_name: str
    os: str
    archive: str
    url: str
    checksum: Optional[str]
    unit: int
    recipe: List[RecipeEntry]

    @property
    def ova_name(self) -> str:
        return f"{Path(self.archive).stem.replace('_', ' - ', 1)}.ova"


@dataclass
class VersionEntry:
    version: str
    prefix: str
    label: str
    reuse_family: Optional[str]
    variants: Dict[str, Dict[str, Any]]


@dataclass
class VersionTable:
    base_url: str
    archives: Dict[str, str]
    artifacts: Dict[str, Dict[str, Any]]
    common_recipe: List[RecipeEntry]
    versions: Dict[str, VersionEntry]

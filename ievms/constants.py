"""Global constants and path configuration for ievms."""

from __future__ import annotations

import os
import re
from pathlib import Path

IEVMS_VERSION = "0.3.1"

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "versions.yaml"
DEFAULT_HOME = Path.home() / ".ievms"
ALL_VERSIONS = ("6", "7", "8", "9", "10", "11", "EDGE")

TRUTHY = {"1", "true", "yes", "on"}
MD5_RE = re.compile(r"^[0-9a-f]{32}$")

DEFAULT_GUEST_USER = "IEUser"
DEFAULT_GUEST_PASSWORD = "Passw0rd!"
DEFAULT_POLL_INTERVAL = 5
DEFAULT_DOWNLOAD_RETRIES = 3

# Guest Additions run level at which guestcontrol accepts commands.
GUEST_READY_LEVEL = 3

SCHEDULED_TASK_NAME = "ievms"
SHUTDOWN_COMMAND = "shutdown.exe /s /f /t 0"
CONTROL_ISO_ARTIFACT = "control-iso"
STORAGE_CONTROLLER = "IDE Controller"
SHARED_FOLDER_NAME = "ievms"
SNAPSHOT_NAME = "clean"
SNAPSHOT_DESCRIPTION = "The initial VM state"

DOWNLOAD_CHUNK_SIZE = 1024 * 256  # 256 KiB
DOWNLOAD_TIMEOUT = 60
USER_AGENT = f"ievms/{IEVMS_VERSION}"

VBOX_DOWNLOAD_BASE = "https://download.virtualbox.org/virtualbox"
VBOX_HASHES_BASE = "https://www.virtualbox.org/download/hashes"
EXTPACK_NAME = "Oracle VM VirtualBox Extension Pack"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

_SENSITIVE_FIELDS = {"guest_password"}

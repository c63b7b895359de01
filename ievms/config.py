"""Configuration loading and environment variable parsing for ievms."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from ievms.constants import (
    ALL_VERSIONS,
    DEFAULT_CONFIG_PATH,
    DEFAULT_GUEST_PASSWORD,
    DEFAULT_GUEST_USER,
    DEFAULT_HOME,
)
from ievms.exceptions import PreconditionError
from ievms.models import (
    ArtifactSpec,
    ProvisionConfig,
    RecipeEntry,
    VersionEntry,
    VersionProfile,
    VersionTable,
)
from ievms.utils import get_env, get_env_bool, log, parse_int_env

_VARIANT_KEYS = {"reuse", "fresh", "default"}


def _parse_recipe(raw: Any, where: str) -> List[RecipeEntry]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise PreconditionError(f"{where}: recipe must be a list")
    entries: List[RecipeEntry] = []
    for item in raw:
        if isinstance(item, str):
            entries.append((item, {}))
        elif isinstance(item, dict) and len(item) == 1:
            name, params = next(iter(item.items()))
            if params is not None and not isinstance(params, dict):
                raise PreconditionError(f"{where}: parameters of '{name}' must be a mapping")
            entries.append((str(name), dict(params or {})))
        else:
            raise PreconditionError(f"{where}: invalid recipe entry {item!r}")
    return entries


def load_version_table(config_path: Optional[Path] = None) -> VersionTable:
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        raise PreconditionError(f"Version table missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise PreconditionError(f"Version table {config_path} contains invalid YAML: {exc}")

    raw_versions = data.get("versions") or {}
    if not isinstance(raw_versions, dict) or not raw_versions:
        raise PreconditionError(f"Version table {config_path} defines no versions")

    versions: Dict[str, VersionEntry] = {}
    for key, entry in raw_versions.items():
        version = str(key)
        if not isinstance(entry, dict):
            raise PreconditionError(f"[{version}] entry is not a mapping")
        variants = entry.get("variants") or {}
        if not isinstance(variants, dict) or not variants:
            raise PreconditionError(f"[{version}] declares no variants")
        unknown = set(variants) - _VARIANT_KEYS
        if unknown:
            raise PreconditionError(f"[{version}] unknown variants: {', '.join(sorted(unknown))}")
        reuse_family = entry.get("reuse_family")
        if reuse_family is None and "default" not in variants:
            raise PreconditionError(f"[{version}] needs a 'default' variant when no reuse_family is set")
        if reuse_family is not None and reuse_family not in ("xp", "win7"):
            raise PreconditionError(f"[{version}] unknown reuse_family '{reuse_family}'")
        versions[version] = VersionEntry(
            version=version,
            prefix=str(entry.get("prefix", "IE")),
            label=str(entry.get("label", version)),
            reuse_family=reuse_family,
            variants={name: dict(body or {}) for name, body in variants.items()},
        )

    return VersionTable(
        base_url=str(data.get("base_url", "")),
        archives={str(k): str(v) for k, v in (data.get("archives") or {}).items()},
        artifacts={str(k): dict(v) for k, v in (data.get("artifacts") or {}).items()},
        common_recipe=_parse_recipe(data.get("common_recipe"), "common_recipe"),
        versions=versions,
    )


def resolve_profile(table: VersionTable, version: str, cfg: ProvisionConfig) -> VersionProfile:
    """Select the variant of ``version`` allowed by the reuse policy."""
    entry = table.versions.get(version)
    if entry is None:
        available = ", ".join(table.versions)
        raise PreconditionError(f"Invalid IE version: {version} (available: {available})")

    if entry.reuse_family is None:
        variant_key = "default"
    else:
        reuse = cfg.reuse_xp if entry.reuse_family == "xp" else cfg.reuse_win7
        variant_key = "reuse" if reuse else "fresh"
    variant = entry.variants.get(variant_key)
    if variant is None:
        raise PreconditionError(f"IE{version} has no '{variant_key}' variant")
    if variant.get("error"):
        raise PreconditionError(str(variant["error"]))
    if "os" not in variant:
        raise PreconditionError(f"[{version}/{variant_key}] missing required field 'os'")

    os_name = str(variant["os"])
    vm_name = f"{entry.prefix}{entry.label} - {os_name}"
    archive = str(variant.get("archive") or f"{entry.prefix}{entry.label}_{os_name}.zip")
    url = str(variant.get("url") or table.base_url.format(archive=archive))
    recipe = _parse_recipe(variant.get("recipe"), f"{version}/{variant_key}") + list(table.common_recipe)
    return VersionProfile(
        version=version,
        vm_name=vm_name,
        os=os_name,
        archive=archive,
        url=url,
        checksum=table.archives.get(archive),
        unit=int(variant.get("unit", 11)),
        recipe=recipe,
    )


def artifact_spec(table: VersionTable, key: str, cfg: ProvisionConfig) -> ArtifactSpec:
    info = table.artifacts.get(key)
    if info is None:
        raise PreconditionError(f"Unknown artifact '{key}'")
    if "url" not in info or "file" not in info:
        raise PreconditionError(f"Artifact '{key}' needs both 'url' and 'file'")
    return ArtifactSpec(
        name=str(info.get("name", key)),
        url=str(info["url"]),
        destination=cfg.home / str(info["file"]),
        checksum=info.get("md5"),
        max_attempts=cfg.download_retries,
        headers={str(k): str(v) for k, v in (info.get("headers") or {}).items()},
        always_refresh=bool(info.get("always_refresh", False)),
    )


def parse_env() -> ProvisionConfig:
    home_raw = (get_env("INSTALL_PATH") or "").strip()
    home = Path(home_raw).expanduser() if home_raw else DEFAULT_HOME

    versions_raw = get_env("IEVMS_VERSIONS")
    if versions_raw is not None and versions_raw.strip():
        versions = versions_raw.split()
    else:
        versions = list(ALL_VERSIONS)

    poll_interval = parse_int_env("POLL_INTERVAL", "5", min_val=1)
    wait_timeout: Optional[float] = None
    if (get_env("WAIT_TIMEOUT") or "").strip():
        wait_timeout = float(parse_int_env("WAIT_TIMEOUT", "0", min_val=1))
    download_retries = parse_int_env("DOWNLOAD_RETRIES", "3", min_val=1, max_val=20)

    bridge_adapter = (get_env("BRIDGE_ADAPTER") or "").strip() or None
    if bridge_adapter is None:
        log("DEBUG", "BRIDGE_ADAPTER not set; guests keep their default NAT networking")

    config_raw = (get_env("IEVMS_CONFIG") or "").strip()
    config_path = Path(config_raw).expanduser() if config_raw else None

    return ProvisionConfig(
        home=home,
        versions=versions,
        reuse_xp=get_env_bool("REUSE_XP", True),
        reuse_win7=get_env_bool("REUSE_WIN7", True),
        guest_user=get_env("GUEST_USER", DEFAULT_GUEST_USER) or DEFAULT_GUEST_USER,
        guest_password=get_env("GUEST_PASSWORD", DEFAULT_GUEST_PASSWORD) or DEFAULT_GUEST_PASSWORD,
        poll_interval=poll_interval,
        wait_timeout=wait_timeout,
        download_retries=download_retries,
        vboxmanage=(get_env("VBOXMANAGE") or "VBoxManage").strip() or "VBoxManage",
        bridge_adapter=bridge_adapter,
        config_path=config_path,
    )

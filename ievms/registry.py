"""Windows registry fragments used to tweak guests."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Union

REG_HEADER = "Windows Registry Editor Version 5.00"

_PUBLIC_CATEGORY = '"Category"=dword:00000000'
_PRIVATE_LINES = [
    '"Category"=dword:00000001',
    '"CategoryType"=dword:00000000',
    '"IconType"=dword:00000000',
]


def _format_value(name: str, value: Union[int, str]) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise TypeError(f"Unsupported registry value for {name}: {value!r}")
    if isinstance(value, int):
        return f'"{name}"=dword:{value:08x}'
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{name}"="{escaped}"'


def render_reg_file(key: str, values: Dict[str, Union[int, str]]) -> str:
    """Render a regedit import file with CRLF line endings."""
    lines: List[str] = [REG_HEADER, "", f"[{key}]"]
    lines.extend(_format_value(name, value) for name, value in values.items())
    return "".join(f"{line}\r\n" for line in lines)


def write_reg_file(path: Path, key: str, values: Dict[str, Union[int, str]]) -> Path:
    """Write ``path`` once; an existing file is left untouched."""
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(render_reg_file(key, values).encode("ascii"))
    return path


def mark_networks_private(exported: bytes) -> bytes:
    """Flip every public network profile in a ``reg export`` dump to private.

    ``reg export`` writes UTF-16LE with a BOM; the BOM is carried through
    unchanged.
    """
    text = exported.decode("utf-16-le")
    output: List[str] = []
    for line in text.split("\r\n"):
        if line == _PUBLIC_CATEGORY:
            output.extend(_PRIVATE_LINES)
        else:
            output.append(line)
    return "\r\n".join(output).encode("utf-16-le")


def rewrite_network_profiles(source: Path, destination: Path) -> Path:
    destination.write_bytes(mark_networks_private(source.read_bytes()))
    return destination

"""ievms package."""

__all__ = [
    "builder",
    "cli",
    "config",
    "constants",
    "exceptions",
    "fetcher",
    "host",
    "hypervisor",
    "models",
    "recipes",
    "registry",
    "utils",
    "vm",
]

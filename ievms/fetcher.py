"""Integrity-checked artifact downloads for ievms."""

from __future__ import annotations

import contextlib
import threading
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Set

from ievms.exceptions import IntegrityError, TransientNetworkError
from ievms.models import ArtifactSpec, FetchOutcome
from ievms.utils import download_file, log, md5_file

Transport = Callable[[str, Path, Optional[Dict[str, str]]], None]


def _default_transport(url: str, destination: Path, headers: Optional[Dict[str, str]]) -> None:
    download_file(url, destination, headers=headers)


class ArtifactFetcher:
    """Ensure verified local copies of artifacts exist.

    Fetches of different destinations proceed independently; a re-entrant lock
    per destination path keeps one writer at a time and lets readers wait for
    an in-flight download via ``hold``.
    """

    def __init__(self, transport: Optional[Transport] = None) -> None:
        self._transport: Transport = transport or _default_transport
        self._locks: Dict[Path, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._refreshed: Set[Path] = set()

    def _lock_for(self, path: Path) -> threading.RLock:
        key = path.resolve()
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, path: Path) -> Iterator[None]:
        """Block other fetches of ``path`` while the caller reads it."""
        with self._lock_for(Path(path)):
            yield

    def fetch(self, spec: ArtifactSpec) -> FetchOutcome:
        with self._lock_for(spec.destination):
            return self._fetch_locked(spec)

    def require(self, spec: ArtifactSpec) -> Path:
        return self.fetch(spec).raise_for_failure()

    def _fetch_locked(self, spec: ArtifactSpec) -> FetchOutcome:
        destination = spec.destination
        if spec.always_refresh and destination.resolve() not in self._refreshed:
            if destination.exists():
                log("INFO", f"Refreshing {spec.name} at {destination}")
                destination.unlink()
        elif destination.is_file():
            if spec.checksum is None:
                log("INFO", f"Found {spec.name} at {destination} - skipping download")
                return FetchOutcome(spec=spec, success=True, attempts=0)
            if self._verify(spec):
                log("INFO", f"Found {spec.name} at {destination} - checksum matches")
                return FetchOutcome(spec=spec, success=True, attempts=0)
            log("WARN", f"Checksum failed for existing {spec.name} - redownloading")
            destination.unlink()

        reason: Optional[str] = None
        attempts = 0
        while attempts < spec.max_attempts:
            attempts += 1
            log(
                "INFO",
                f"Downloading {spec.name} from {spec.url} to {destination} "
                f"(attempt {attempts} of {spec.max_attempts})",
            )
            try:
                self._transport(spec.url, destination, spec.headers or None)
                if not destination.is_file():
                    raise TransientNetworkError(f"Download of {spec.url} produced no file")
                if spec.checksum is not None and not self._verify(spec):
                    raise IntegrityError(f"MD5 check failed for {destination}")
            except (TransientNetworkError, IntegrityError) as exc:
                reason = str(exc)
                log("WARN", f"{spec.name}: {reason}")
                destination.unlink(missing_ok=True)
                continue
            if spec.always_refresh:
                self._refreshed.add(destination.resolve())
            log("SUCCESS", f"Fetched {spec.name} ({attempts} attempt(s))")
            return FetchOutcome(spec=spec, success=True, attempts=attempts)

        log("ERROR", f"Failed to download {spec.url} to {destination} (attempt {attempts} of {spec.max_attempts})")
        return FetchOutcome(spec=spec, success=False, attempts=attempts, reason=reason)

    @staticmethod
    def _verify(spec: ArtifactSpec) -> bool:
        actual = md5_file(spec.destination)
        if actual != spec.checksum:
            log("WARN", f"MD5 check failed for {spec.destination} (wanted {spec.checksum}, got {actual})")
            return False
        log("DEBUG", f"MD5 check succeeded for {spec.destination}")
        return True

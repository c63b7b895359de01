"""Utility functions for ievms."""

from __future__ import annotations

import contextlib
import hashlib
import http.client
import os
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TypeVar
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from ievms.constants import (
    _LOG_VERBOSE,
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_TIMEOUT,
    TRUTHY,
    USER_AGENT,
)
from ievms.exceptions import BuildCancelled, PreconditionError, TransientNetworkError, WaitTimeout

T = TypeVar("T")

_log_state = threading.local()
_print_lock = threading.Lock()


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    prefix = getattr(_log_state, "prefix", None)
    text = f"({prefix}) {message}" if prefix else message
    with _print_lock:
        print(f"{colour}[{level}]{reset} {text}", flush=True)
    sink = getattr(_log_state, "sink", None)
    if sink is not None:
        sink.write(f"{time.strftime('%Y-%m-%dT%H:%M:%S')} [{level}] {message}\n")
        sink.flush()


@contextlib.contextmanager
def log_to(path: Path, prefix: Optional[str] = None) -> Iterator[None]:
    """Mirror this thread's log lines into ``path`` for post-mortem inspection."""
    previous = (getattr(_log_state, "sink", None), getattr(_log_state, "prefix", None))
    ensure_directory(path.parent)
    with open(path, "a", encoding="utf-8") as sink:
        _log_state.sink = sink
        _log_state.prefix = prefix
        try:
            yield
        finally:
            _log_state.sink, _log_state.prefix = previous


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise PreconditionError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise PreconditionError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise PreconditionError(f"{name} must be <= {max_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def md5_file(path: Path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(DOWNLOAD_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_file(url: str, destination: Path, headers: Optional[Dict[str, str]] = None) -> None:
    """Stream ``url`` into ``destination`` via a temporary file in the same directory.

    Any transport problem, including a body shorter than the advertised
    Content-Length, raises TransientNetworkError. The destination is only
    replaced once the whole body has been written.
    """
    request_headers = {"User-Agent": USER_AGENT}
    request_headers.update(headers or {})
    req = Request(url, headers=request_headers)
    try:
        response = urlopen(req, timeout=DOWNLOAD_TIMEOUT)
    except HTTPError as exc:
        raise TransientNetworkError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise TransientNetworkError(f"Failed to download {url}: {exc.reason}")
    except (OSError, http.client.HTTPException) as exc:
        raise TransientNetworkError(f"Failed to download {url}: {exc!r}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    ensure_directory(destination.parent)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=".part-") as tmp:
        tmp_path = Path(tmp.name)
        try:
            while True:
                try:
                    chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                except (OSError, http.client.HTTPException) as exc:
                    # IncompleteRead: chunked body cut short
                    raise TransientNetworkError(f"Connection lost downloading {url}: {exc!r}")
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
            if total_bytes is not None and downloaded != total_bytes:
                raise TransientNetworkError(
                    f"Truncated download of {url}: got {downloaded} of {total_bytes} bytes"
                )
            tmp.flush()
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("DEBUG", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s from {url}")


def fetch_text(url: str) -> str:
    """Return the body of a small text resource such as a listing or checksum file."""
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=DOWNLOAD_TIMEOUT) as response:
            return response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        raise TransientNetworkError(f"HTTP error fetching {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise TransientNetworkError(f"Failed to fetch {url}: {exc.reason}")
    except (OSError, http.client.HTTPException) as exc:
        raise TransientNetworkError(f"Failed to fetch {url}: {exc!r}")


def poll_until(
    query: Callable[[], T],
    done: Callable[[T], bool],
    interval: float,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    label: str = "condition",
) -> T:
    """Sleep ``interval`` then query, until ``done(value)`` holds.

    Waits forever unless ``timeout`` is given. Setting ``cancel`` aborts the
    wait with BuildCancelled at the next interval boundary.
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    while True:
        log("DEBUG", f"Waiting for {label}...")
        if cancel is not None:
            if cancel.wait(interval):
                raise BuildCancelled(f"Cancelled while waiting for {label}")
        elif interval > 0:
            time.sleep(interval)
        value = query()
        if done(value):
            return value
        if deadline is not None and time.monotonic() >= deadline:
            raise WaitTimeout(f"Timed out after {timeout}s waiting for {label}")


def vm_dir_name(vm_name: str) -> str:
    """Return the per-VM working directory name ("IE9 - Win7" -> "IE9_Win7")."""
    return vm_name.replace(" - ", "_")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result

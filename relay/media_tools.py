import logging
import os
import platform
import shutil
import subprocess
import threading
from typing import List, Optional, Tuple

LOG = logging.getLogger(__name__)


def _creationflags() -> int:
    if platform.system().lower() == "windows" and hasattr(subprocess, "CREATE_NO_WINDOW"):
        return subprocess.CREATE_NO_WINDOW
    return 0


def _maybe_add_windows_path():
    """Add common ffmpeg install locations to PATH for this process."""
    if platform.system().lower() != "windows":
        return
    candidates = [
        r"C:\Program Files\ffmpeg\bin",
        r"C:\Program Files (x86)\ffmpeg\bin",
    ]
    current = os.environ.get("PATH", "")
    extras = [p for p in candidates if os.path.isdir(p) and p not in current]
    if extras:
        os.environ["PATH"] = os.pathsep.join(extras + [current])


def find_tool(name: str) -> Optional[str]:
    _maybe_add_windows_path()
    return shutil.which(name) or shutil.which(f"{name}.exe")


def tool_available(name: str, timeout: float = 10) -> bool:
    """True when `name -version` runs and exits cleanly."""
    path = find_tool(name)
    if not path:
        LOG.info("%s not found in PATH", name)
        return False
    try:
        proc = subprocess.run(
            [path, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            timeout=timeout,
            creationflags=_creationflags(),
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        LOG.info("%s is not runnable: %s", name, e)
        return False
    return proc.returncode == 0


def run_tool(cmd: List[str], timeout: float) -> subprocess.CompletedProcess:
    """Run an external media tool, capturing output. Raises on timeout/OS errors."""
    return subprocess.run(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        timeout=timeout,
        creationflags=_creationflags(),
        check=False,
    )


class OutputLimitExceeded(Exception):
    """The tool wrote more to stdout than the caller allows."""


def _kill(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        proc.kill()
    except OSError as e:
        LOG.debug("Failed to kill %s: %s", proc.args, e)


def run_tool_capped(cmd: List[str], timeout: float, max_output: int, chunk_size: int = 64 * 1024) -> Tuple[int, bytes]:
    """
    Run a tool and collect stdout, never holding more than `max_output` bytes.

    The child is killed as soon as the cap is passed (OutputLimitExceeded) or
    `timeout` expires (subprocess.TimeoutExpired). stderr is discarded.
    """
    proc = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.DEVNULL,
        stdin=subprocess.DEVNULL,
        creationflags=_creationflags(),
    )
    expired = threading.Event()

    def _expire() -> None:
        expired.set()
        _kill(proc)

    timer = threading.Timer(timeout, _expire)
    timer.daemon = True
    timer.start()
    chunks: List[bytes] = []
    total = 0
    try:
        assert proc.stdout is not None
        while True:
            chunk = proc.stdout.read(chunk_size)
            if not chunk:
                break
            total += len(chunk)
            if total > max_output:
                _kill(proc)
                raise OutputLimitExceeded(f"{cmd[0]} wrote more than {max_output} bytes")
            chunks.append(chunk)
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            _kill(proc)
    finally:
        timer.cancel()
        _kill(proc)
        try:
            proc.stdout.close()
        except OSError:
            pass
        proc.wait()
    if expired.is_set():
        raise subprocess.TimeoutExpired(cmd, timeout)
    return proc.returncode, b"".join(chunks)

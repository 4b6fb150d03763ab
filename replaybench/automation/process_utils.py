#!/usr/bin/env python3
"""Utility helpers for running external tools and supervising background processes."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union


class ProcessLaunchError(RuntimeError):
    pass


class CommandFailed(ProcessLaunchError):
    def __init__(self, message: str, argv: Sequence[str], returncode: Optional[int]):
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode


def split_cmd(cmd: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(cmd, (list, tuple)):
        return [str(part) for part in cmd]
    return shlex.split(str(cmd))


def render_command(template: Union[str, Sequence[str]], **values) -> List[str]:
    """Split a command template and expand ``{placeholders}`` in every token."""
    argv = []
    for token in split_cmd(template):
        try:
            argv.append(token.format(**values))
        except KeyError as exc:
            raise ValueError(f"unknown placeholder {exc} in command template {template!r}") from exc
    return argv


def _open_log(log_path: Path, header: str):
    log_path.parent.mkdir(parents=True, exist_ok=True)
    stream = open(log_path, "a", encoding="utf-8")
    stream.write(header)
    stream.flush()
    return stream


def _merged_env(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if not env:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


def run_command(
    name: str,
    argv: List[str],
    failure_message: str,
    log_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
) -> float:
    """Run ``argv`` to completion and return its wall-clock duration in seconds.

    A non-zero exit (or a binary that cannot be started) raises
    :class:`CommandFailed` carrying ``failure_message``; callers do not
    recover from it except where a documented fallback exists.
    """
    stdout = None
    if log_path:
        stdout = _open_log(log_path, f"[launcher] running {name}: {' '.join(argv)}\n")
    start = time.monotonic()
    try:
        try:
            cp = subprocess.run(
                argv,
                cwd=cwd,
                env=_merged_env(env),
                stdout=stdout,
                stderr=subprocess.STDOUT if stdout else None,
                check=False,
            )
        except OSError as exc:
            raise CommandFailed(f"{failure_message} ({name}: {exc})", argv, None) from exc
        elapsed = time.monotonic() - start
        if stdout:
            stdout.write(f"[launcher] {name} exited with code {cp.returncode} after {elapsed:.3f}s\n")
    finally:
        if stdout:
            stdout.close()
    if cp.returncode != 0:
        raise CommandFailed(f"{failure_message} ({name} exited with code {cp.returncode})", argv, cp.returncode)
    return elapsed


@contextmanager
def managed_process(
    name: str,
    argv: List[str],
    log_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    ready_wait: float = 1.0,
    stop_timeout: float = 5.0,
) -> Iterator[subprocess.Popen]:
    """Spawn a background subprocess and make sure it is cleaned up.

    The yielded ``Popen`` handle is the only way the process is signalled;
    on exit it is terminated (SIGTERM, then SIGKILL after ``stop_timeout``).
    """
    stdout = None
    if log_path:
        stdout = _open_log(log_path, f"[launcher] starting {name}: {' '.join(argv)}\n")
    try:
        proc = subprocess.Popen(argv, cwd=cwd, env=_merged_env(env), stdout=stdout, stderr=subprocess.STDOUT)
    except OSError as exc:
        if stdout:
            stdout.close()
        raise ProcessLaunchError(f"{name} could not be started: {exc}") from exc
    try:
        time.sleep(ready_wait)
        if proc.poll() is not None and proc.returncode != 0:
            raise ProcessLaunchError(f"{name} exited early with code {proc.returncode}")
        yield proc
    finally:
        terminate_process(proc, timeout=stop_timeout)
        if stdout:
            stdout.close()


def terminate_process(proc: subprocess.Popen, timeout: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def wait_for_exit(proc: subprocess.Popen, timeout: float) -> bool:
    """Give a background process ``timeout`` seconds to finish on its own."""
    try:
        proc.wait(timeout=timeout)
        return True
    except subprocess.TimeoutExpired:
        return False


def wait_for_stable_file(path: Path, interval: float = 1.0, timeout: float = 30.0) -> int:
    """Block until ``path`` exists and its size is unchanged across ``interval``.

    Returns the settled size in bytes.
    """
    deadline = time.monotonic() + timeout
    last_size: Optional[int] = None
    while True:
        size = path.stat().st_size if path.exists() else None
        if size is not None and size == last_size:
            return size
        if time.monotonic() >= deadline:
            if size is None:
                raise ProcessLaunchError(f"{path} was never created")
            raise ProcessLaunchError(f"{path} still growing after {timeout:.1f}s (last size {size} bytes)")
        last_size = size
        time.sleep(interval)

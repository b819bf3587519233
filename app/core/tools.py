from __future__ import annotations

import shutil
import subprocess

TOOL_CHECKS: dict[str, list[str]] = {
    "ffprobe": ["ffprobe", "-version"],
    "rclone": ["rclone", "version"],
}


def probe_binary(command: list[str], timeout_s: float = 10.0) -> bool:
    if shutil.which(command[0]) is None:
        return False
    try:
        subprocess.run(command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=True, timeout=timeout_s)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return False
    return True


def check_tools() -> dict[str, bool]:
    """Report which optional external binaries are usable on this host."""
    return {label: probe_binary(command) for label, command in TOOL_CHECKS.items()}


__all__ = ["TOOL_CHECKS", "check_tools", "probe_binary"]

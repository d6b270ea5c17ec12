"""Resolve a submission executable into a command line for the current host."""

from __future__ import annotations

import sys
from pathlib import Path

DOTNET = "dotnet"


def resolve_command(
    path: str | Path, args: list[str] | None = None, platform: str | None = None
) -> list[str]:
    """Build the argv used to launch ``path``.

    Managed ``.dll`` modules run through the dotnet launcher. A Windows ``.exe``
    on another host is replaced by its sibling ``.dll`` when one exists, and is
    otherwise handed to dotnet as a best effort. Python scripts run unbuffered
    with the current interpreter and ``.jar`` files through ``java -jar``.
    """
    exe = Path(path)
    extra = list(args or [])
    suffix = exe.suffix.lower()
    on_windows = (platform or sys.platform).startswith("win")

    if suffix == ".dll":
        return [DOTNET, str(exe), *extra]
    if suffix == ".exe" and not on_windows:
        sibling = exe.with_suffix(".dll")
        if sibling.exists():
            return [DOTNET, str(sibling), *extra]
        return [DOTNET, str(exe), *extra]
    if suffix == ".py":
        return [sys.executable, "-u", str(exe), *extra]
    if suffix == ".jar":
        return ["java", "-jar", str(exe), *extra]
    return [str(exe), *extra]

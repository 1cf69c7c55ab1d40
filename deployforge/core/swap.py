"""Temporary swap around memory-hungry local builds."""

from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType

from deployforge.core.runner import CommandRunner, CommandTimeoutError

logger = logging.getLogger(__name__)

_GIB_KB = 1024 * 1024
_SWAP_CMD_TIMEOUT = 600.0


def mem_available_kb(meminfo: Path = Path("/proc/meminfo")) -> int | None:
    """``MemAvailable`` in kB, or None when it cannot be read."""
    try:
        text = meminfo.read_text()
    except OSError:
        return None
    for line in text.splitlines():
        if line.startswith("MemAvailable:"):
            return int(line.split()[1])
    return None


class SwapGuard:
    """Adds a swap file for the duration of a ``with`` block when needed.

    Swap is only created when available memory is below
    ``min_memory_gb``, ``size_gb`` is positive and the swap file does not
    already exist; a pre-existing file is never touched. Whatever this
    guard created is removed on exit, success or not. Failing to create
    swap is logged and the build proceeds without it.
    """

    def __init__(
        self,
        runner: CommandRunner,
        swap_file: Path,
        *,
        size_gb: int = 4,
        min_memory_gb: int = 4,
        meminfo: Path = Path("/proc/meminfo"),
    ) -> None:
        self._runner = runner
        self._swap_file = Path(swap_file)
        self._size_gb = size_gb
        self._min_memory_gb = min_memory_gb
        self._meminfo = meminfo
        self.created = False

    def needed(self) -> bool:
        if self._size_gb <= 0 or self._swap_file.exists():
            return False
        available = mem_available_kb(self._meminfo)
        if available is None:
            return False
        return available < self._min_memory_gb * _GIB_KB

    def __enter__(self) -> SwapGuard:
        if not self.needed():
            return self
        logger.info(
            "low memory: creating %dG swap at %s for the build", self._size_gb, self._swap_file
        )
        steps = [
            ["fallocate", "-l", f"{self._size_gb}G", str(self._swap_file)],
            ["chmod", "600", str(self._swap_file)],
            ["mkswap", str(self._swap_file)],
            ["swapon", str(self._swap_file)],
        ]
        for argv in steps:
            if not self._step(argv):
                self._swap_file.unlink(missing_ok=True)
                return self
        self.created = True
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self.created:
            return
        self._step(["swapoff", str(self._swap_file)])
        try:
            self._swap_file.unlink(missing_ok=True)
        except OSError as err:
            logger.warning("could not remove swap file %s: %s", self._swap_file, err)
        self.created = False
        logger.info("temporary swap %s removed", self._swap_file)

    def _step(self, argv: list[str]) -> bool:
        try:
            result = self._runner.run(argv, timeout=_SWAP_CMD_TIMEOUT)
        except (OSError, CommandTimeoutError) as exc:
            logger.warning("swap step %s failed: %s", argv[0], exc)
            return False
        if not result.ok:
            logger.warning("swap step %s exited %d: %s", argv[0], result.returncode, result.stderr.strip())
            return False
        return True

"""Execute a binary and classify what happened.

The probe answers one question: can this file run on this host? The answer
is one of a fixed set of ``ProbeOutcome`` values so the verifier and the
diagnostics can map it to an ``ErrorKind`` and a remediation without
parsing prose.
"""

from __future__ import annotations

import errno
import logging
import os
import platform
import re
import stat
from pathlib import Path
from typing import NamedTuple

from deployforge.core.errors import ErrorKind, remediation_for
from deployforge.core.runner import CommandRunner, CommandTimeoutError, SubprocessRunner
from deployforge.models.reports import (
    PROBE_ERROR_KINDS,
    DiagnosticFinding,
    ProbeOutcome,
    ProbeResult,
)

logger = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"

# e_machine -> normalized architecture tag
ELF_MACHINES: dict[int, str] = {
    0x03: "x86",
    0x08: "mips",
    0x14: "ppc",
    0x15: "ppc64",
    0x16: "s390x",
    0x28: "arm",
    0x3E: "x86_64",
    0xB7: "aarch64",
    0xF3: "riscv64",
}

_MACHINE_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "i386": "x86",
    "i486": "x86",
    "i586": "x86",
    "i686": "x86",
    "armv6l": "arm",
    "armv7l": "arm",
    "armv8l": "arm",
    "ppc64le": "ppc64",
}

_SEMVER = re.compile(r"\d+\.\d+\.\d+")
_SHARED_LIB_ERROR = "error while loading shared libraries"


class ElfInfo(NamedTuple):
    architecture: str  # "unknown-0x<machine>" when unmapped
    bits: int
    little_endian: bool


def host_architecture() -> str:
    """Normalized architecture tag of the running host."""
    machine = platform.machine().lower()
    return _MACHINE_ALIASES.get(machine, machine)


def parse_elf_header(header: bytes) -> ElfInfo | None:
    """Decode class, endianness and machine from the first 20 bytes.

    Returns ``None`` when ``header`` is not an ELF header.
    """
    if len(header) < 20 or not header.startswith(ELF_MAGIC):
        return None
    bits = 64 if header[4] == 2 else 32
    little = header[5] != 2
    machine = int.from_bytes(header[18:20], "little" if little else "big")
    arch = ELF_MACHINES.get(machine, f"unknown-{machine:#x}")
    return ElfInfo(architecture=arch, bits=bits, little_endian=little)


def inspect_binary(path: Path) -> ElfInfo | None:
    with open(path, "rb") as fh:
        return parse_elf_header(fh.read(20))


def check_native(data: bytes, host_arch: str) -> tuple[ErrorKind | None, str]:
    """Is ``data`` a native executable for ``host_arch``?

    Returns ``(None, arch)`` on success, otherwise the error kind and a
    short explanation.
    """
    info = parse_elf_header(data[:20])
    if info is None:
        return ErrorKind.INVALID_ARTIFACT, "not an ELF executable"
    if info.architecture != host_arch:
        return (
            ErrorKind.ARCHITECTURE_MISMATCH,
            f"binary is {info.architecture}, host is {host_arch}",
        )
    return None, info.architecture


def extract_version(text: str) -> str | None:
    match = _SEMVER.search(text)
    return match.group(0) if match else None


class HealthProbe:
    """Runs the capability probe on a binary with a bounded timeout.

    Parameters
    ----------
    runner:
        Command runner used to execute the binary (and ``ldd`` for
        diagnostics).
    timeout:
        Seconds before a hung binary is killed and reported as ``timeout``.
    probe_args:
        Arguments of the capability probe, ``["--version"]`` by default.
    host_arch:
        Override of the detected host architecture (tests).
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        timeout: float = 10.0,
        probe_args: list[str] | None = None,
        host_arch: str | None = None,
    ) -> None:
        self._runner = runner or SubprocessRunner()
        self._timeout = timeout
        self._probe_args = list(probe_args) if probe_args is not None else ["--version"]
        self._host_arch = host_arch or host_architecture()

    @property
    def host_arch(self) -> str:
        return self._host_arch

    def probe(self, path: Path, args: list[str] | None = None) -> ProbeResult:
        """Invoke ``path`` with the probe arguments and classify the result."""
        path = Path(path)
        if not path.exists():
            return ProbeResult(outcome=ProbeOutcome.NOT_EXECUTABLE, detail=f"{path} does not exist")
        if not os.access(path, os.X_OK):
            return ProbeResult(
                outcome=ProbeOutcome.NOT_EXECUTABLE, detail=f"{path} lacks the execute bit"
            )
        info = inspect_binary(path)
        if info is not None and info.architecture != self._host_arch:
            return ProbeResult(
                outcome=ProbeOutcome.WRONG_ARCHITECTURE,
                detail=f"binary is {info.architecture}, host is {self._host_arch}",
            )

        argv = [str(path), *(self._probe_args if args is None else args)]
        try:
            result = self._runner.run(argv, timeout=self._timeout)
        except CommandTimeoutError:
            return ProbeResult(
                outcome=ProbeOutcome.TIMEOUT,
                detail=f"no exit within {self._timeout:.0f}s",
            )
        except PermissionError as exc:
            return ProbeResult(outcome=ProbeOutcome.NOT_EXECUTABLE, detail=str(exc))
        except FileNotFoundError as exc:
            # The file exists, so the missing piece is its ELF interpreter
            return ProbeResult(
                outcome=ProbeOutcome.MISSING_DEPENDENCY,
                detail=f"program interpreter not found: {exc}",
            )
        except OSError as exc:
            if exc.errno == errno.ENOEXEC:
                return ProbeResult(outcome=ProbeOutcome.WRONG_ARCHITECTURE, detail=str(exc))
            return ProbeResult(outcome=ProbeOutcome.UNKNOWN, detail=str(exc))

        output = result.output
        if _SHARED_LIB_ERROR in output or result.returncode == 127:
            outcome = ProbeOutcome.MISSING_DEPENDENCY
        elif result.returncode == 126:
            outcome = ProbeOutcome.NOT_EXECUTABLE
        elif result.returncode < 0:
            outcome = ProbeOutcome.CRASH
        elif result.returncode == 0:
            outcome = ProbeOutcome.OK
        else:
            outcome = ProbeOutcome.UNKNOWN

        if outcome != ProbeOutcome.OK:
            logger.warning(
                "probe of %s: %s (exit %d)", path, outcome.value, result.returncode
            )
        return ProbeResult(
            outcome=outcome,
            exit_code=result.returncode,
            stdout=result.stdout[-4000:],
            stderr=result.stderr[-4000:],
            detail=output.strip().splitlines()[-1] if output.strip() else "",
        )

    def version_of(self, path: Path) -> str | None:
        """Version printed by the binary's probe, if any."""
        result = self.probe(path)
        if not result.ok:
            return None
        return extract_version(result.stdout + "\n" + result.stderr)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def diagnose(self, path: Path) -> list[DiagnosticFinding]:
        """Step-by-step checks with a remediation for each failure.

        Stops after the first check that makes later ones meaningless
        (a missing file cannot be inspected further).
        """
        path = Path(path)
        findings: list[DiagnosticFinding] = []

        if not path.exists():
            findings.append(_fail("exists", f"{path} not found", ErrorKind.NOT_EXECUTABLE))
            return findings
        st = path.stat()
        findings.append(
            DiagnosticFinding(
                check="exists",
                passed=True,
                detail=f"{st.st_size} bytes, mode {stat.filemode(st.st_mode)}",
            )
        )

        if not os.access(path, os.X_OK):
            findings.append(
                _fail("executable", "execute bit not set (chmod +x)", ErrorKind.NOT_EXECUTABLE)
            )
        else:
            findings.append(DiagnosticFinding(check="executable", passed=True))

        info = inspect_binary(path)
        if info is None:
            findings.append(
                DiagnosticFinding(
                    check="format", passed=True, detail="not ELF (script or wrapper)"
                )
            )
        elif info.architecture != self._host_arch:
            findings.append(
                _fail(
                    "architecture",
                    f"{info.architecture} ({info.bits}-bit), host is {self._host_arch}",
                    ErrorKind.ARCHITECTURE_MISMATCH,
                )
            )
            return findings
        else:
            findings.append(
                DiagnosticFinding(
                    check="architecture",
                    passed=True,
                    detail=f"{info.architecture} ({info.bits}-bit)",
                )
            )
            findings.append(self._check_libraries(path))

        result = self.probe(path)
        if result.ok:
            findings.append(
                DiagnosticFinding(
                    check="probe",
                    passed=True,
                    detail=extract_version(result.stdout) or result.detail,
                )
            )
        else:
            findings.append(
                _fail(
                    "probe",
                    f"{result.outcome.value}: {result.detail}",
                    PROBE_ERROR_KINDS[result.outcome],
                )
            )
        return findings

    def _check_libraries(self, path: Path) -> DiagnosticFinding:
        try:
            result = self._runner.run(["ldd", str(path)], timeout=self._timeout)
        except (OSError, CommandTimeoutError) as exc:
            return DiagnosticFinding(
                check="libraries", passed=True, detail=f"ldd unavailable ({exc})"
            )
        missing = [
            line.split("=>")[0].strip()
            for line in result.stdout.splitlines()
            if "not found" in line
        ]
        if missing:
            return _fail(
                "libraries",
                "missing: " + ", ".join(missing),
                ErrorKind.MISSING_DEPENDENCY,
            )
        if "not a dynamic executable" in result.output:
            return DiagnosticFinding(check="libraries", passed=True, detail="statically linked")
        return DiagnosticFinding(check="libraries", passed=True)


def _fail(check: str, detail: str, kind: ErrorKind) -> DiagnosticFinding:
    return DiagnosticFinding(
        check=check,
        passed=False,
        detail=detail,
        kind=kind,
        remediation=remediation_for(kind),
    )

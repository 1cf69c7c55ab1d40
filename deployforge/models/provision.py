"""Provision manifest models: paths that must exist before install."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator


class ProvisionEntry(BaseModel):
    """One declared path with its required mode and ownership.

    ``owner`` / ``group`` of ``None`` leave ownership unmanaged.
    ``seed_from`` applies to file entries only: when the file is absent it
    is created by copying the seed (e.g. ``config.toml.example``).
    """

    model_config = ConfigDict(frozen=True)

    path: Path
    mode: int = 0o755
    owner: str | None = "root"
    group: str | None = "root"
    kind: Literal["directory", "file"] = "directory"
    seed_from: Path | None = None

    @field_validator("mode", mode="before")
    @classmethod
    def _parse_mode(cls, value: int | str) -> int:
        # TOML manifests write modes as "0755" strings
        if isinstance(value, str):
            return int(value, 8)
        return value

    @field_validator("owner", "group", mode="before")
    @classmethod
    def _empty_is_unmanaged(cls, value: str | None) -> str | None:
        # TOML has no null; "" leaves ownership alone
        return value or None


class ProvisionManifest(BaseModel):
    """Mapping of path -> required state, applied idempotently."""

    model_config = ConfigDict(frozen=True)

    entries: list[ProvisionEntry] = []

    @property
    def paths(self) -> set[Path]:
        return {e.path for e in self.entries}

    def missing_coverage(self, required: list[Path]) -> list[Path]:
        """Return the required paths the manifest does not declare."""
        declared = self.paths
        return [p for p in required if p not in declared]

    @classmethod
    def from_toml(cls, path: Path) -> ProvisionManifest:
        """Load a manifest from a TOML file with ``[[path]]`` tables."""
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
        return cls(entries=[ProvisionEntry(**item) for item in data.get("path", [])])


class ProvisionChange(BaseModel):
    """A single change ProvisionManager made to the host."""

    model_config = ConfigDict(frozen=True)

    path: Path
    action: Literal["created", "seeded", "chmod", "chown"]
    detail: str = ""

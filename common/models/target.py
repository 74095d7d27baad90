"""Storage target models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class TargetKind(str, Enum):
    """Kinds of storage a benchmark can run against."""
    BLOCK_DEVICE = "block_device"
    DEVICE_MAPPER = "device_mapper"
    FILESYSTEM = "filesystem"


# Option keys each kind must carry in its option bag
REQUIRED_OPTIONS: dict[TargetKind, tuple[str, ...]] = {
    TargetKind.BLOCK_DEVICE: (),
    TargetKind.DEVICE_MAPPER: ("dm_name",),
    TargetKind.FILESYSTEM: ("fs_type",),
}


class StorageTarget(BaseModel):
    """A configured storage target. Immutable once loaded."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Unique target name")
    path: str = Field(..., min_length=1, description="Device node or mount point")
    kind: TargetKind = Field(
        ...,
        validation_alias=AliasChoices("kind", "type"),
        description="Target kind",
    )
    options: dict[str, Any] = Field(default_factory=dict, description="Kind-specific options")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("target name must not be blank")
        return v

    @model_validator(mode="after")
    def validate_kind_options(self) -> "StorageTarget":
        missing = [key for key in REQUIRED_OPTIONS[self.kind] if not self.options.get(key)]
        if missing:
            raise ValueError(
                f"{self.kind.value} target '{self.name}' is missing required options: "
                f"{', '.join(missing)}"
            )
        if self.kind != TargetKind.FILESYSTEM and not self.path.startswith("/"):
            raise ValueError(f"{self.kind.value} target '{self.name}' needs an absolute device path")
        return self

    @property
    def is_filesystem(self) -> bool:
        """Filesystem targets are exercised through a directory, not a device node."""
        return self.kind == TargetKind.FILESYSTEM

"""Job profile models."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from common.utils import is_percentage, parse_size

# fio's --rw vocabulary
RW_MODES = {
    "read", "write", "trim",
    "randread", "randwrite", "randtrim",
    "rw", "readwrite", "randrw",
    "trimwrite", "randtrimwrite",
}
MIXED_RW_MODES = {"rw", "readwrite", "randrw"}


class FioDefaults(BaseModel):
    """Settings applied under every profile unless the profile overrides them."""
    runtime: Optional[int] = Field(default=60, gt=0, description="Runtime in seconds")
    time_based: bool = Field(default=True)
    group_reporting: bool = Field(default=True)
    randomize: Optional[int] = Field(default=None, description="Maps to fio's randrepeat")
    write_bw_log: bool = Field(default=False)
    write_lat_log: bool = Field(default=False)
    write_iops_log: bool = Field(default=False)
    log_avg_msec: int = Field(default=1000, ge=1, description="Log averaging window (ms)")
    status_interval: Optional[int] = Field(default=None, ge=1, description="Seconds between status reports")


class JobProfile(BaseModel):
    """Named template of fio parameters. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    description: Optional[str] = Field(default=None)
    ioengine: str = Field(default="libaio", description="fio I/O engine")
    rw: str = Field(default="randread", description="fio read/write mode")
    rwmixread: Optional[int] = Field(default=None, ge=0, le=100, description="Read percentage for mixed modes")
    bs: list[str] = Field(default_factory=lambda: ["4k"], description="Block sizes, one job each")
    size: str = Field(default="1G", description="Size per job")
    numjobs: int = Field(default=1, ge=1)
    iodepth: int = Field(default=1, ge=1)
    direct: bool = Field(default=False)
    buffered: Optional[bool] = Field(default=None)
    verify: Optional[str] = Field(default=None, description="Verification mode, e.g. md5")
    runtime: Optional[int] = Field(default=None, gt=0, description="Profile runtime bound in seconds")
    time_based: Optional[bool] = Field(default=None)
    group_reporting: Optional[bool] = Field(default=None)
    extra_options: dict[str, Any] = Field(default_factory=dict, description="Passed through to fio")

    @model_validator(mode="before")
    @classmethod
    def collect_extra_options(cls, data: Any) -> Any:
        """Fold unknown keys into extra_options."""
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        extra = {k: v for k, v in data.items() if k not in known}
        if not extra:
            return data
        data = {k: v for k, v in data.items() if k in known}
        data["extra_options"] = {**extra, **(data.get("extra_options") or {})}
        return data

    @field_validator("rw")
    @classmethod
    def validate_rw(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in RW_MODES:
            raise ValueError(f"unknown rw mode: {v}")
        return v

    @field_validator("bs", mode="before")
    @classmethod
    def split_block_sizes(cls, v: Union[str, list]) -> list:
        if isinstance(v, str):
            v = v.split(",")
        sizes: list[str] = []
        for item in v:
            item = str(item).strip()
            if item and item not in sizes:
                sizes.append(item)
        if not sizes:
            raise ValueError("at least one block size is required")
        for item in sizes:
            parse_size(item)
        return sizes

    @field_validator("size")
    @classmethod
    def validate_size(cls, v: str) -> str:
        v = str(v).strip()
        if not is_percentage(v):
            parse_size(v)
        return v

    @model_validator(mode="after")
    def validate_rwmix(self) -> "JobProfile":
        if self.rwmixread is not None and self.rw not in MIXED_RW_MODES:
            raise ValueError(f"rwmixread only applies to mixed modes, not {self.rw}")
        return self

    @property
    def is_multi_block_size(self) -> bool:
        return len(self.bs) > 1


def _mix(description: str, rw: str, rwmixread: int) -> dict[str, Any]:
    return {
        "description": description,
        "ioengine": "io_uring",
        "rw": rw,
        "rwmixread": rwmixread,
        "bs": "4k" if rw == "randrw" else "1M",
        "size": "10G",
        "numjobs": 16,
        "iodepth": 128,
        "direct": True,
        "runtime": 600,
        "time_based": True,
        "group_reporting": True,
    }


# Reference read/write mixes. Random mixes run at 4k, sequential ones at 1M.
WORKLOAD_MIXES: dict[str, dict[str, Any]] = {
    "oltp_75r_25w": _mix("OLTP / relational database", "randrw", 75),
    "virtual_server_70r_30w": _mix("General virtualised servers", "randrw", 70),
    "vdi_65r_35w": _mix("VDI boot and login storms", "randrw", 65),
    "mixed_50r_50w": _mix("Mixed enterprise worst case", "randrw", 50),
    "warehouse_scan_95r_5w": _mix("Data warehouse scans", "rw", 95),
    "backup_5r_95w": _mix("Backup and log capture", "rw", 5),
    "ai_train_95r_5w": _mix("AI training reads", "randrw", 95),
    "ai_checkpoint_10r_90w": _mix("AI checkpoint writes", "randrw", 10),
    "ai_pipeline_48r_52w": _mix("AI end-to-end pipeline", "randrw", 48),
    "ai_feature_ingest_20r_80w": _mix("AI feature ingest", "randrw", 20),
    "ai_inference_99r_1w": _mix("AI inference serving", "randrw", 99),
}

"""Common utility functions."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

import yaml

# fio accepts k/m/g/t/p with optional "i" and "b" (4k, 4KiB, 4KB), all base 1024
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([KMGTP]?)(I?B?)$")
_SIZE_EXPONENTS = {"": 0, "K": 1, "M": 2, "G": 3, "T": 4, "P": 5}
_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")
_PERCENT_RE = re.compile(r"^(\d+(?:\.\d+)?)%$")

MAX_FILENAME_LENGTH = 255


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_db_timestamp(value: datetime) -> str:
    """Format a datetime so that string order matches time order."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def generate_id(prefix: str = "") -> str:
    """Time-ordered unique identifier, e.g. ``run_20240101_120000_1a2b3c4d``."""
    stem = f"{utcnow():%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}"
    return f"{prefix}_{stem}" if prefix else stem


def generate_run_id() -> str:
    return generate_id("run")


def generate_job_id() -> str:
    return generate_id("job")


def parse_size(size_str: str) -> int:
    """Parse a fio size (e.g. '10G', '512M', '4k', '1.5GiB') to bytes."""
    text = str(size_str).strip().upper()
    match = _SIZE_RE.match(text)
    if not match:
        raise ValueError(f"Invalid size format: {size_str}")

    number, prefix, _ = match.groups()
    return int(float(number) * 1024 ** _SIZE_EXPONENTS[prefix])


def is_percentage(value: str) -> bool:
    """Check for fio's percentage size form (e.g. '50%')."""
    match = _PERCENT_RE.match(str(value).strip())
    return bool(match) and 0 < float(match.group(1)) <= 100


def format_size(num_bytes: int, precision: int = 2) -> str:
    """Format bytes to a human-readable string."""
    num_bytes = int(num_bytes)
    if num_bytes <= 0:
        return "0 B"

    exponent = min((num_bytes.bit_length() - 1) // 10, len(_SIZE_UNITS) - 1)
    if exponent == 0:
        return f"{num_bytes} B"
    return f"{num_bytes / 1024 ** exponent:.{precision}f} {_SIZE_UNITS[exponent]}"


def format_duration(seconds: float) -> str:
    """Format seconds as e.g. '1h 2m 3s'."""
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def load_yaml(path: Union[str, Path]) -> dict:
    """Load a YAML mapping; an empty file yields {}."""
    return yaml.safe_load(Path(path).read_text()) or {}


def save_yaml(path: Union[str, Path], data: dict) -> None:
    """Write a YAML file, creating parent directories."""
    path = ensure_dir(Path(path).parent) / Path(path).name
    path.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def deep_merge(base: dict, override: dict) -> dict:
    """Merge override into a copy of base; nested dicts merge, anything else is replaced."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def ensure_dir(path: Union[str, Path]) -> Path:
    """Create a directory (and parents) if missing and return it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def sanitize_filename(name: str) -> str:
    """Make a job or run name safe to use as a file name."""
    return re.sub(r"[^\w\-.]", "", name.replace(" ", "_"))[:MAX_FILENAME_LENGTH]

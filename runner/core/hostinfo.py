"""Host snapshot from /proc.

Only cpuinfo, meminfo and loadavg are read. A missing or unreadable file
leaves its fields unset; the snapshot is informational and never fails a
run.
"""

from __future__ import annotations

import logging
import socket
from pathlib import Path
from typing import Optional, Union

from common.models.host import HostInfo

logger = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")

_MEMINFO_FIELDS = {
    "MemTotal": "memory_total",
    "MemAvailable": "memory_available",
    "SwapTotal": "swap_total",
    "SwapFree": "swap_free",
}


def parse_cpuinfo(text: str) -> dict:
    """Model name, MHz and logical processor count from /proc/cpuinfo."""
    info: dict = {}
    processors = 0
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key == "processor":
            processors += 1
        elif key in ("model name", "Model") and "cpu_model" not in info:
            info["cpu_model"] = value
        elif key == "cpu MHz" and "cpu_mhz" not in info:
            try:
                info["cpu_mhz"] = float(value)
            except ValueError:
                logger.debug(f"Ignoring cpu MHz value {value!r}")
    if processors:
        info["cpu_count"] = processors
    return info


def parse_meminfo(text: str) -> dict:
    """Memory and swap totals in bytes from /proc/meminfo."""
    info: dict = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        field = _MEMINFO_FIELDS.get(key.strip())
        if not sep or field is None:
            continue
        parts = value.split()
        try:
            amount = int(parts[0])
        except (IndexError, ValueError):
            logger.debug(f"Ignoring meminfo line {line!r}")
            continue
        if len(parts) > 1 and parts[1].lower() == "kb":
            amount *= 1024
        info[field] = amount
    return info


def parse_loadavg(text: str) -> dict:
    """1, 5 and 15 minute load averages from /proc/loadavg."""
    load = text.split()[:3]
    try:
        return {"load_average": (float(load[0]), float(load[1]), float(load[2]))}
    except (IndexError, ValueError):
        logger.debug(f"Ignoring loadavg {text!r}")
        return {}


def _read(path: Path) -> Optional[str]:
    try:
        return path.read_text()
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return None


def collect_host_info(proc_root: Union[str, Path] = PROC_ROOT) -> HostInfo:
    """Snapshot this host's CPU, memory and load."""
    proc_root = Path(proc_root)
    fields: dict = {"hostname": socket.gethostname()}
    for name, parse in (
        ("cpuinfo", parse_cpuinfo),
        ("meminfo", parse_meminfo),
        ("loadavg", parse_loadavg),
    ):
        text = _read(proc_root / name)
        if text is not None:
            fields.update(parse(text))
    return HostInfo(**fields)

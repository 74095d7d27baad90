"""Host snapshot models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from common.utils import utcnow


class HostInfo(BaseModel):
    """CPU, memory and load of the benchmark host when a run was submitted."""
    hostname: str = Field(default="")
    collected_at: datetime = Field(default_factory=utcnow)

    # CPU
    cpu_model: Optional[str] = Field(default=None)
    cpu_count: Optional[int] = Field(default=None, description="Logical processors")
    cpu_mhz: Optional[float] = Field(default=None)

    # Memory, bytes
    memory_total: Optional[int] = Field(default=None)
    memory_available: Optional[int] = Field(default=None)
    swap_total: Optional[int] = Field(default=None)
    swap_free: Optional[int] = Field(default=None)

    load_average: Optional[tuple[float, float, float]] = Field(default=None)

    @property
    def memory_used_percent(self) -> Optional[float]:
        if not self.memory_total or self.memory_available is None:
            return None
        return round(100 * (self.memory_total - self.memory_available) / self.memory_total, 1)

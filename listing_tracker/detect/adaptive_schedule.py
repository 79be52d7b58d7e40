"""Adaptive re-scrape interval policy for geographic areas.

Areas whose listings change often are crawled more frequently. The interval
is interpolated geometrically between the configured maximum (nothing
changes) and minimum (the observed change rate reaches the saturation rate).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from listing_tracker.config import settings


@dataclass(frozen=True)
class AdaptiveSchedulePolicy:
    """Parameters of the area scheduling feedback loop."""

    min_interval_hours: int = 1
    max_interval_hours: int = 48
    saturation_rate: float = 0.5
    smoothing: float = 0.3

    def __post_init__(self):
        if self.min_interval_hours <= 0:
            raise ValueError("min_interval_hours must be positive")
        if self.max_interval_hours < self.min_interval_hours:
            raise ValueError("max_interval_hours must be >= min_interval_hours")
        if self.saturation_rate <= 0:
            raise ValueError("saturation_rate must be positive")
        if not 0 < self.smoothing <= 1:
            raise ValueError("smoothing must be in (0, 1]")

    @classmethod
    def from_settings(cls) -> "AdaptiveSchedulePolicy":
        return cls(
            min_interval_hours=settings.schedule_min_interval_hours,
            max_interval_hours=settings.schedule_max_interval_hours,
            saturation_rate=settings.change_rate_saturation,
            smoothing=settings.change_rate_smoothing,
        )

    def interval_hours(self, change_rate: float) -> int:
        """
        Scrape interval for an area with the given change rate.

        Non-increasing in change_rate and always within [min, max].
        """
        rate = min(max(float(change_rate), 0.0), 1.0)
        pressure = min(1.0, rate / self.saturation_rate)
        ratio = self.min_interval_hours / self.max_interval_hours
        hours = round(self.max_interval_hours * ratio ** pressure)
        return max(self.min_interval_hours, min(self.max_interval_hours, hours))

    def smooth(self, previous: Optional[float], observed: float) -> float:
        """Exponentially weighted update of a running average."""
        if previous is None:
            return observed
        return self.smoothing * observed + (1 - self.smoothing) * float(previous)

    def next_scrape(self, last_scraped: datetime, interval_hours: int) -> datetime:
        return last_scraped + timedelta(hours=interval_hours)

"""
Connectivity tracking

Reachability flips are decided here and performed through the store's
compare-and-set calls. The poll path and the out-of-band staleness sweep both
go through this class; whichever call flips the flag first is the only one
that reports the transition.
"""

from datetime import datetime, timedelta
from typing import List

import structlog

from hvac_runtime.store.runtime_store import DeviceRecord, RuntimeStore

logger = structlog.get_logger(__name__)

OFFLINE = "OFFLINE"
ONLINE = "ONLINE"


class ConnectivityTracker:
    """Decides reachability transitions for devices"""

    def __init__(self, store: RuntimeStore, stale_seconds: int):
        self._store = store
        self.stale_seconds = stale_seconds

    def stale_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.stale_seconds)

    def report_unreachable(self, device_id: str) -> bool:
        """Sample says unreachable. Returns True if this call took the device offline"""
        flipped = self._store.mark_unreachable(device_id)
        if flipped:
            logger.info("Device went offline", device_id=device_id, reason="reported_unreachable")
        else:
            logger.debug("Device still offline", device_id=device_id)
        return flipped

    def report_reachable(self, device_id: str, now: datetime) -> bool:
        """Sample says reachable. Returns True if this call brought the device back online"""
        flipped = self._store.mark_reachable(device_id, now)
        if flipped:
            logger.info("Device came back online", device_id=device_id)
        return flipped

    def find_stale(self, now: datetime) -> List[DeviceRecord]:
        return self._store.stale_candidates(self.stale_cutoff(now))

    def flip_if_stale(self, device_id: str, now: datetime) -> bool:
        """Staleness sweep flip. Returns True only for the caller that flipped the flag"""
        flipped = self._store.mark_unreachable(device_id, stale_before=self.stale_cutoff(now))
        if flipped:
            logger.info("Device went offline", device_id=device_id, reason="stale_timeout",
                        stale_seconds=self.stale_seconds)
        return flipped

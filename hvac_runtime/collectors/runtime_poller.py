"""
Runtime poller for the HVAC runtime engine
Wakes up on a short tick, polls every device whose adaptive delay has elapsed
with bounded parallelism, and runs the connectivity staleness sweep.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

import aiohttp
import structlog

from hvac_runtime.core.config import settings
from hvac_runtime.core.logging import configure_logging
from hvac_runtime.database.connection import SessionLocal, init_database
from hvac_runtime.delivery.event_sink import HttpEventSink
from hvac_runtime.engine.runtime_engine import EngineConfig, ProcessResult, RuntimeEngine
from hvac_runtime.engine.state import utcnow
from hvac_runtime.collectors.thermostat_api import ThermostatApiClient
from hvac_runtime.store.runtime_store import DeviceRecord, RuntimeStore

logger = structlog.get_logger(__name__)


class RuntimePoller:
    """Schedules per-device polls and feeds samples to the runtime engine"""

    def __init__(
        self,
        engine: RuntimeEngine,
        store: RuntimeStore,
        source,
        concurrency: int = None,
        error_backoff_seconds: int = None,
        connectivity_check_seconds: int = None,
        tick_seconds: int = None,
    ):
        self.engine = engine
        self.store = store
        self.source = source
        self.error_backoff_seconds = error_backoff_seconds or settings.error_backoff_seconds
        self.connectivity_check_seconds = connectivity_check_seconds or settings.connectivity_check_seconds
        self.tick_seconds = tick_seconds or settings.scheduler_tick_seconds
        self.running = False
        self.concurrency = max(1, concurrency or settings.poll_concurrency)
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._next_poll_at: Dict[str, datetime] = {}
        self._in_flight: Set[str] = set()

    async def start(self):
        """Start polling and the connectivity sweep"""
        self.running = True
        logger.info("Starting runtime poller", concurrency=self.concurrency,
                    connectivity_check_seconds=self.connectivity_check_seconds)
        await asyncio.gather(self._poll_loop(), self._sweep_loop())

    async def stop(self):
        """Stop the poller after in-flight polls finish"""
        self.running = False
        logger.info("Runtime poller stopped")

    async def _poll_loop(self):
        """Main polling loop"""
        while self.running:
            try:
                await self.poll_due_devices()
            except Exception as e:
                logger.error("Error in poll loop", error=str(e))
            await asyncio.sleep(self.tick_seconds)

    async def _sweep_loop(self):
        """Periodic staleness sweep"""
        while self.running:
            try:
                results = await self.engine.sweep_stale()
                if results:
                    logger.info("Staleness sweep took devices offline", count=len(results))
            except Exception as e:
                logger.error("Error in connectivity sweep", error=str(e))
            await asyncio.sleep(self.connectivity_check_seconds)

    def is_due(self, device_id: str, now: datetime) -> bool:
        if device_id in self._in_flight:
            return False
        next_at = self._next_poll_at.get(device_id)
        return next_at is None or next_at <= now

    def schedule(self, device_id: str, delay_seconds: int, now: datetime = None):
        self._next_poll_at[device_id] = (now or utcnow()) + timedelta(seconds=delay_seconds)

    async def poll_due_devices(self, now: datetime = None) -> List[ProcessResult]:
        """Poll every device that is due, at most `concurrency` at a time"""
        now = now or utcnow()
        devices = self.store.list_devices()
        known = {device.device_id for device in devices}
        # Forget schedules of removed devices
        for device_id in list(self._next_poll_at):
            if device_id not in known:
                del self._next_poll_at[device_id]

        due = [device for device in devices if self.is_due(device.device_id, now)]
        if not due:
            return []
        logger.debug("Polling due devices", due=len(due), registered=len(devices))
        results = await asyncio.gather(*(self._poll_device(device) for device in due))
        return [result for result in results if result is not None]

    async def _poll_device(self, device: DeviceRecord) -> Optional[ProcessResult]:
        """Fetch one sample and run it through the engine"""
        async with self._semaphore:
            self._in_flight.add(device.device_id)
            try:
                state = self.store.load_state(device.device_id)
                previous_revision = state.last_runtime_revision if state else None
                sample = await self.source.fetch_sample(device, previous_revision)
                result = await self.engine.process_sample(device, sample)

                if result.failed_deliveries:
                    logger.warning("Some events were not delivered", device_id=device.device_id,
                                   failed=[event.event_type.value for event in result.failed_deliveries])
                self.schedule(device.device_id, result.next_poll_seconds or settings.poll_idle_seconds)
                logger.info("Device polled", device_id=device.device_id, action=result.action.value,
                            events=len(result.events), next_poll_seconds=result.next_poll_seconds)
                return result
            except Exception as e:
                logger.error("Error polling device", device_id=device.device_id, error=str(e),
                             retry_in=self.error_backoff_seconds)
                self.schedule(device.device_id, self.error_backoff_seconds)
                return None
            finally:
                self._in_flight.discard(device.device_id)


async def main():
    """Main entry point for the poller"""
    configure_logging()
    init_database()
    store = RuntimeStore(SessionLocal)

    async with aiohttp.ClientSession() as http:
        sink = HttpEventSink(session=http)
        engine = RuntimeEngine(store, sink, EngineConfig.from_settings(settings))
        poller = RuntimePoller(engine, store, ThermostatApiClient(http, store))
        try:
            await poller.start()
        except KeyboardInterrupt:
            logger.info("Received interrupt signal")
        finally:
            await poller.stop()

if __name__ == "__main__":
    asyncio.run(main())

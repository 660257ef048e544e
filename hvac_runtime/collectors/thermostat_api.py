"""
Thermostat cloud API client

Fetches the account summary (equipment status, connection flag and revision
per thermostat), refreshes OAuth tokens when they are about to expire or get
rejected, and pulls runtime details for telemetry only when the revision
changed since the last poll.
"""

import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import aiohttp
import structlog

from hvac_runtime.core.config import settings
from hvac_runtime.engine.errors import SampleFetchError
from hvac_runtime.engine.state import utcnow
from hvac_runtime.schemas.events import Sample, Telemetry
from hvac_runtime.store.runtime_store import DeviceRecord, RuntimeStore

logger = structlog.get_logger(__name__)


def tenths_to_f(value) -> Optional[float]:
    """The API reports temperatures in tenths of a degree Fahrenheit"""
    if value is None:
        return None
    try:
        return round(float(value) / 10, 1)
    except (TypeError, ValueError):
        return None


def revision_token(parts: List[str]) -> str:
    """Thermostat and runtime revisions joined; name, connection and alert changes are ignored"""
    thermostat_rev = parts[3] if len(parts) > 3 else ""
    runtime_rev = parts[5] if len(parts) > 5 else ""
    return f"{thermostat_rev}:{runtime_rev}"


def parse_summary(summary: Dict) -> Tuple[Dict[str, str], Dict[str, str], Dict[str, bool]]:
    """Split statusList/revisionList entries into per-thermostat maps.

    statusList entries look like "<id>:<equipment status>", revisionList
    entries like "<id>:<name>:<connected>:<thermostatRev>:<alertsRev>:<runtimeRev>:<intervalRev>".
    Returns (statuses, revision tokens, connected).
    """
    statuses, revisions, connected = {}, {}, {}
    for item in (summary or {}).get("statusList") or []:
        identifier, sep, status = str(item).partition(":")
        if sep and identifier:
            statuses[identifier] = status
    for item in (summary or {}).get("revisionList") or []:
        parts = str(item).split(":")
        if len(parts) >= 3 and parts[0]:
            revisions[parts[0]] = revision_token(parts)
            connected[parts[0]] = parts[2].lower() == "true"
    return statuses, revisions, connected


def telemetry_from_details(details: Optional[Dict]) -> Tuple[Telemetry, Optional[str]]:
    """Extract telemetry and the thermostat name from a /thermostat response"""
    thermostats = (details or {}).get("thermostatList") or []
    if not thermostats:
        return Telemetry(), None
    thermostat = thermostats[0]
    runtime = thermostat.get("runtime") or {}
    thermostat_settings = thermostat.get("settings") or {}
    forecasts = (thermostat.get("weather") or {}).get("forecasts") or []
    forecast = forecasts[0] if forecasts else {}

    hvac_mode = thermostat_settings.get("hvacMode")
    telemetry = Telemetry(
        temperature_f=tenths_to_f(runtime.get("actualTemperature")),
        heat_setpoint_f=tenths_to_f(runtime.get("desiredHeat")),
        cool_setpoint_f=tenths_to_f(runtime.get("desiredCool")),
        humidity=runtime.get("actualHumidity"),
        outdoor_temperature_f=tenths_to_f(forecast.get("temperature")),
        outdoor_humidity=forecast.get("relativeHumidity"),
        hvac_mode=hvac_mode.lower() if hvac_mode else None,
    )
    return telemetry, thermostat.get("name")


class ThermostatApiClient:
    """Produces one Sample per device per poll"""

    def __init__(self, session: aiohttp.ClientSession, store: RuntimeStore = None,
                 api_url: str = None, token_url: str = None, client_id: str = None):
        self.session = session
        self.store = store
        self.api_url = (api_url or settings.thermostat_api_url).rstrip("/")
        self.token_url = token_url or settings.thermostat_token_url
        self.client_id = client_id or settings.thermostat_client_id
        self.timeout = aiohttp.ClientTimeout(total=settings.thermostat_request_timeout)

    def _token_expiring(self, device: DeviceRecord, now: datetime) -> bool:
        if device.token_expires_at is None:
            return True
        return device.token_expires_at - now <= timedelta(seconds=settings.token_refresh_margin_seconds)

    async def refresh_tokens(self, device: DeviceRecord) -> DeviceRecord:
        if not device.refresh_token:
            raise SampleFetchError(f"No refresh token for device {device.device_id}")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": device.refresh_token,
            "client_id": self.client_id or "",
        }
        async with self.session.post(self.token_url, data=data, timeout=self.timeout) as response:
            response.raise_for_status()
            body = await response.json()

        device.access_token = body["access_token"]
        device.refresh_token = body.get("refresh_token", device.refresh_token)
        device.token_expires_at = utcnow() + timedelta(seconds=int(body.get("expires_in", 3600)))
        if self.store is not None:
            self.store.update_tokens(device.device_id, device.access_token,
                                     device.refresh_token, device.token_expires_at)
        logger.info("Tokens refreshed", device_id=device.device_id)
        return device

    async def _get(self, path: str, selection: Dict, access_token: str) -> Dict:
        url = f"{self.api_url}/{path}"
        headers = {"Authorization": f"Bearer {access_token}",
                   "Content-Type": "application/json;charset=UTF-8"}
        params = {"json": json.dumps(selection)}
        async with self.session.get(url, headers=headers, params=params, timeout=self.timeout) as response:
            response.raise_for_status()
            return await response.json()

    async def fetch_summary(self, access_token: str) -> Dict:
        selection = {"selection": {"selectionType": "registered", "selectionMatch": "",
                                   "includeEquipmentStatus": True}}
        return await self._get("thermostatSummary", selection, access_token)

    async def fetch_details(self, access_token: str, device_id: str) -> Dict:
        selection = {"selection": {"selectionType": "thermostats", "selectionMatch": device_id,
                                   "includeRuntime": True, "includeSettings": True,
                                   "includeWeather": True, "includeEvents": False}}
        return await self._get("thermostat", selection, access_token)

    async def fetch_sample(self, device: DeviceRecord, previous_revision: Optional[str] = None) -> Sample:
        """Fetch the current sample for a device.

        Errors other than a single token rejection propagate to the caller's
        retry policy.
        """
        if self._token_expiring(device, utcnow()):
            try:
                await self.refresh_tokens(device)
            except (aiohttp.ClientError, KeyError, SampleFetchError) as e:
                logger.warning("Token refresh before summary failed", device_id=device.device_id, error=str(e))

        if not device.access_token:
            raise SampleFetchError(f"No access token for device {device.device_id}")

        try:
            summary = await self.fetch_summary(device.access_token)
        except aiohttp.ClientResponseError as e:
            if e.status != 401:
                raise
            await self.refresh_tokens(device)
            summary = await self.fetch_summary(device.access_token)

        statuses, revisions, connected = parse_summary(summary)
        if device.device_id not in statuses and device.device_id not in revisions:
            raise SampleFetchError(f"Device {device.device_id} missing from thermostat summary")

        revision = revisions.get(device.device_id)
        sample = Sample(
            equipment_status=statuses.get(device.device_id, ""),
            is_reachable=connected.get(device.device_id, True),
            revision=revision,
        )

        if sample.is_reachable and revision and revision != previous_revision:
            try:
                details = await self.fetch_details(device.access_token, device.device_id)
                sample.telemetry, sample.device_name = telemetry_from_details(details)
            except aiohttp.ClientError as e:
                logger.warning("Details fetch failed", device_id=device.device_id, error=str(e))

        logger.debug("Sample fetched", device_id=device.device_id, equipment_status=sample.equipment_status,
                     revision=revision, reachable=sample.is_reachable)
        return sample

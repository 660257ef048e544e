"""
Equipment status classification

Maps a raw equipment status string such as "compCool1,fan" or "auxHeat1" to
one of eight standardized states. Fan presence is kept as a separate
sub-state for every compressor/heat category because filter-usage accounting
downstream depends on it.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)

# Standardized states
COOLING_FAN = "Cooling_Fan"
COOLING = "Cooling"
AUX_HEAT_FAN = "AuxHeat_Fan"
AUX_HEAT = "AuxHeat"
HEATING_FAN = "Heating_Fan"
HEATING = "Heating"
FAN_ONLY = "Fan_only"
IDLE = "Idle"

# Running modes
MODE_COOLING = "cooling"
MODE_HEATING = "heating"
MODE_AUXHEAT = "auxheat"
MODE_FANONLY = "fanonly"

FAN_TOKENS = frozenset({"fan", "fanonly", "fanonly1"})


@dataclass(frozen=True)
class ClassifiedStatus:
    """Result of classifying one raw status string"""
    is_active: bool
    mode: Optional[str]
    standardized_state: str


@dataclass(frozen=True)
class ClassificationPolicy:
    """Product-level choices the classifier cannot infer from the tokens alone.

    fan_only_is_active: a bare fan token with no compressor/heat token is
        always classified as Fan_only; this decides whether that counts as
        an active session (True) or as idle circulation between cycles.
    """
    fan_only_is_active: bool = True


DEFAULT_POLICY = ClassificationPolicy()

IDLE_STATUS = ClassifiedStatus(is_active=False, mode=None, standardized_state=IDLE)


def _is_cooling(token: str) -> bool:
    return token.startswith("cool") or token.startswith("compcool")


def _is_aux_heat(token: str) -> bool:
    return token.startswith("auxheat") or token == "emergency"


def _is_primary_heat(token: str) -> bool:
    # heat, heat2, heatPump, heatPump2, heating
    return token.startswith("heat") or token.startswith("compheat")


def classify_equipment_status(raw: Any, policy: ClassificationPolicy = DEFAULT_POLICY) -> ClassifiedStatus:
    """Classify a raw equipment status; malformed input degrades to idle"""
    if raw is None:
        return IDLE_STATUS
    if not isinstance(raw, str):
        logger.warning("Malformed equipment status, treating as idle", raw=repr(raw))
        return IDLE_STATUS
    return _classify(raw, policy)


@lru_cache(maxsize=1024)
def _classify(raw: str, policy: ClassificationPolicy) -> ClassifiedStatus:
    tokens = [t.strip() for t in raw.lower().split(",") if t.strip()]
    if not tokens:
        return IDLE_STATUS

    has_fan = any(t in FAN_TOKENS for t in tokens)

    if any(_is_cooling(t) for t in tokens):
        state, mode = (COOLING_FAN if has_fan else COOLING), MODE_COOLING
    elif any(_is_aux_heat(t) for t in tokens):
        state, mode = (AUX_HEAT_FAN if has_fan else AUX_HEAT), MODE_AUXHEAT
    elif any(_is_primary_heat(t) for t in tokens):
        state, mode = (HEATING_FAN if has_fan else HEATING), MODE_HEATING
    elif has_fan:
        return ClassifiedStatus(
            is_active=policy.fan_only_is_active,
            mode=MODE_FANONLY if policy.fan_only_is_active else None,
            standardized_state=FAN_ONLY,
        )
    else:
        # Accessories only (ventilator, humidifier, dehumidifier)
        return IDLE_STATUS

    return ClassifiedStatus(is_active=True, mode=mode, standardized_state=state)

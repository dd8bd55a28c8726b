from __future__ import annotations

import re
from enum import Enum
from typing import Any, NamedTuple


class TransportMode(str, Enum):
    PLANE = "plane"
    TRAIN = "train"
    BUS = "bus"
    BOAT = "boat"
    CAR = "car"
    WALK = "walk"
    BICYCLE = "bicycle"
    MOTORCYCLE = "motorcycle"
    NA = "na"


MODEL_TRANSPORT_MODES = [mode for mode in TransportMode if mode is not TransportMode.NA]

_ALIASES: dict[str, TransportMode] = {
    "flight": TransportMode.PLANE,
    "flights": TransportMode.PLANE,
    "airline": TransportMode.PLANE,
    "airplane": TransportMode.PLANE,
    "aeroplane": TransportMode.PLANE,
    "air": TransportMode.PLANE,
    "rail": TransportMode.TRAIN,
    "railway": TransportMode.TRAIN,
    "metro": TransportMode.TRAIN,
    "subway": TransportMode.TRAIN,
    "tram": TransportMode.TRAIN,
    "shinkansen": TransportMode.TRAIN,
    "coach": TransportMode.BUS,
    "shuttle": TransportMode.BUS,
    "ferry": TransportMode.BOAT,
    "ship": TransportMode.BOAT,
    "cruise": TransportMode.BOAT,
    "auto": TransportMode.CAR,
    "automobile": TransportMode.CAR,
    "taxi": TransportMode.CAR,
    "uber": TransportMode.CAR,
    "drive": TransportMode.CAR,
    "driving": TransportMode.CAR,
    "walking": TransportMode.WALK,
    "foot": TransportMode.WALK,
    "onfoot": TransportMode.WALK,
    "bike": TransportMode.BICYCLE,
    "biking": TransportMode.BICYCLE,
    "cycle": TransportMode.BICYCLE,
    "cycling": TransportMode.BICYCLE,
    "motorbike": TransportMode.MOTORCYCLE,
    "scooter": TransportMode.MOTORCYCLE,
    "moto": TransportMode.MOTORCYCLE,
    "n a": TransportMode.NA,
    "none": TransportMode.NA,
    "unknown": TransportMode.NA,
    "unset": TransportMode.NA,
    "notset": TransportMode.NA,
    "notspecified": TransportMode.NA,
    "notavailable": TransportMode.NA,
}
_ALIASES.update({mode.value: mode for mode in TransportMode})


class ParsedTransportMode(NamedTuple):
    mode: TransportMode
    recognized: bool
    raw: str


def _alias_key(value: str) -> str:
    key = re.sub(r"[_-]+", " ", value.lower().strip())
    key = re.sub(r"[^\w\s]+|_", " ", key)
    return " ".join(key.split())


def parse_transport_mode(value: Any) -> ParsedTransportMode:
    raw = value.strip() if isinstance(value, str) else ""
    if not raw:
        return ParsedTransportMode(TransportMode.NA, False, raw)

    key = _alias_key(raw)
    for candidate in (key, key.replace(" ", "")):
        mode = _ALIASES.get(candidate)
        if mode is not None:
            return ParsedTransportMode(mode, True, raw)
    return ParsedTransportMode(TransportMode.NA, False, raw)


def normalize_transport_mode(value: Any) -> str:
    return parse_transport_mode(value).mode.value

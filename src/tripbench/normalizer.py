from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from tripbench.durations import parse_days, parse_hours, round_half_up, to_finite
from tripbench.itinerary import (
    TRAVEL_COLOR,
    activity_color,
    city_color,
    normalize_activity_types,
    normalize_city_name,
    normalize_country_info,
)
from tripbench.models import CanonicalTrip, Coordinates, TripAiMeta, TripItem, utcnow
from tripbench.transport import normalize_transport_mode


@dataclass
class _CityStop:
    name: str
    days: int
    description: str
    coordinates: Coordinates | None
    source_index: int


def _parse_cities(raw_cities: list[Any]) -> list[_CityStop]:
    stops: list[_CityStop] = []
    for index, city in enumerate(raw_cities):
        if not isinstance(city, dict):
            continue
        days = to_finite(city.get("days"))
        lat = to_finite(city.get("lat"))
        lng = to_finite(city.get("lng"))
        stops.append(
            _CityStop(
                name=str(city.get("name") or f"Stop {index + 1}"),
                days=max(1, round_half_up(days)) if days is not None and days > 0 else 1,
                description=str(city.get("description") or ""),
                coordinates=Coordinates(lat=lat, lng=lng) if lat is not None and lng is not None else None,
                source_index=index,
            )
        )
    return stops


def _activity_duration(value: Any) -> float:
    days = parse_days(value)
    if days is not None:
        return days
    numeric = to_finite(value)
    return numeric if numeric is not None and numeric > 0 else 1.0


def _assign_city_colors(items: list[TripItem]) -> None:
    colors: dict[str, str] = {}
    for item in items:
        if item.type != "city":
            continue
        key = normalize_city_name(item.title or item.location or "")
        if not key:
            continue
        item.color = colors.setdefault(key, item.color)


def build_trip(
    data: dict[str, Any],
    start_date: str,
    *,
    round_trip: bool = False,
    provider: str,
    model: str,
    session_id: str,
    run_id: str,
) -> CanonicalTrip:
    """Turn a validated itinerary into the product's canonical trip.

    Cities become back-to-back day blocks. A round trip whose last city is not
    the first one gets a one-day closing stop copied from the first city.
    """
    stops = _parse_cities(data.get("cities") if isinstance(data.get("cities"), list) else [])
    if round_trip and stops:
        first, last = stops[0], stops[-1]
        if normalize_city_name(first.name) != normalize_city_name(last.name):
            stops.append(
                _CityStop(
                    name=first.name,
                    days=1,
                    description=first.description,
                    coordinates=first.coordinates,
                    source_index=-1,
                )
            )

    raw_activities = data.get("activities") if isinstance(data.get("activities"), list) else []
    items: list[TripItem] = []
    offsets: list[int] = []
    offset = 0
    for index, stop in enumerate(stops):
        offsets.append(offset)
        items.append(
            TripItem(
                id=f"city-{index}",
                type="city",
                title=stop.name,
                start_date_offset=offset,
                duration=stop.days,
                color=city_color(index),
                description=stop.description,
                location=stop.name,
                coordinates=stop.coordinates,
            )
        )
        if stop.source_index >= 0:
            for activity_index, activity in enumerate(raw_activities):
                if not isinstance(activity, dict) or to_finite(activity.get("cityIndex")) != stop.source_index:
                    continue
                day_offset = to_finite(activity.get("dayOffsetInCity")) or 0.0
                activity_types = normalize_activity_types(activity.get("activityTypes", activity.get("type")))
                items.append(
                    TripItem(
                        id=f"act-{index}-{activity_index}",
                        type="activity",
                        title=str(activity.get("title") or "Planned Activity"),
                        start_date_offset=offset + day_offset,
                        duration=_activity_duration(activity.get("duration")),
                        color=activity_color(activity_types),
                        description=str(activity.get("description") or ""),
                        location=stop.name,
                        activity_type=activity_types,
                    )
                )
        offset += stop.days

    raw_segments = data.get("travelSegments") if isinstance(data.get("travelSegments"), list) else []
    for segment_index, segment in enumerate(raw_segments):
        if not isinstance(segment, dict):
            continue
        source = to_finite(segment.get("fromCityIndex"))
        if source is None or source < 0 or source >= len(offsets) or source != int(source):
            continue
        source = int(source)
        target = to_finite(segment.get("toCityIndex"))
        if target is not None and 0 <= target < len(stops) and target == int(target):
            target_name = stops[int(target)].name
        else:
            target_name = "next stop"
        hours = parse_hours(segment.get("duration"))
        items.append(
            TripItem(
                id=f"travel-{segment_index}",
                type="travel",
                title=str(segment.get("description") or "Travel"),
                start_date_offset=offsets[source] + (stops[source].days or 1) - 0.5,
                duration=hours / 24 if hours is not None else 0.1,
                color=TRAVEL_COLOR,
                description=f"Travel from {stops[source].name} to {target_name}",
                transport_mode=normalize_transport_mode(segment.get("transportMode")),
            )
        )

    _assign_city_colors(items)
    now = utcnow()
    return CanonicalTrip(
        title=str(data.get("tripTitle") or "My Trip"),
        start_date=start_date,
        items=items,
        country_info=normalize_country_info(data.get("countryInfo")),
        round_trip=round_trip,
        source_template_id=session_id,
        ai_meta=TripAiMeta(
            provider=provider,
            model=model,
            generated_at=now,
            benchmark_session_id=session_id,
            benchmark_run_id=run_id,
        ),
        created_at=now,
        updated_at=now,
    )

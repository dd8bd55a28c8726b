from __future__ import annotations

import re
from typing import Any

from tripbench.durations import parse_days, parse_hours, to_finite
from tripbench.itinerary import (
    activity_types_canonical,
    collect_country_entries,
    country_entry_valid,
    has_text,
    normalize_activity_types,
    normalize_city_name,
)
from tripbench.models import ValidationResult
from tripbench.transport import TransportMode, parse_transport_mode

REQUIRED_TOP_LEVEL_KEYS = ("tripTitle", "cities", "travelSegments", "activities")

_MUST_SECTIONS = tuple(
    re.compile(rf"###\s*Must\s*{name}", re.IGNORECASE) for name in ("See", "Try", "Do")
)


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _is_closing_round_trip_stop(cities: list[Any], index: int) -> bool:
    if index == 0 or index != len(cities) - 1:
        return False
    first, last = cities[0], cities[index]
    if not isinstance(first, dict) or not isinstance(last, dict):
        return False
    if not has_text(first.get("name")) or not has_text(last.get("name")):
        return False
    return (
        normalize_city_name(first["name"]) == normalize_city_name(last["name"])
        and to_finite(last.get("days")) == 0
    )


def _city_fields_valid(city: Any, allow_zero_days: bool) -> bool:
    if not isinstance(city, dict):
        return False
    days = to_finite(city.get("days"))
    days_valid = days is not None and (days > 0 or (allow_zero_days and days == 0))
    return (
        has_text(city.get("name"))
        and has_text(city.get("description"))
        and days_valid
        and _coordinates_valid(city)
    )


def _coordinates_valid(city: Any) -> bool:
    if not isinstance(city, dict):
        return False
    return to_finite(city.get("lat")) is not None and to_finite(city.get("lng")) is not None


def _activity_fields_valid(activity: Any) -> bool:
    if not isinstance(activity, dict):
        return False
    return (
        has_text(activity.get("title"))
        and "cityIndex" in activity
        and "dayOffsetInCity" in activity
        and "duration" in activity
        and has_text(activity.get("description"))
        and isinstance(activity.get("activityTypes"), list)
        and len(activity["activityTypes"]) > 0
    )


def _travel_fields_valid(segment: Any) -> bool:
    if not isinstance(segment, dict):
        return False
    required = ("fromCityIndex", "toCityIndex", "transportMode", "description", "duration")
    return all(key in segment for key in required) and has_text(segment.get("description"))


def _index_in_range(value: Any, size: int) -> int | None:
    index = to_finite(value)
    if index is None or index < 0 or index >= size:
        return None
    return int(index)


def _transport_valid(segment: Any, canonical: bool) -> bool:
    if not isinstance(segment, dict):
        return False
    parsed = parse_transport_mode(segment.get("transportMode"))
    if not parsed.recognized or parsed.mode is TransportMode.NA:
        return False
    return not canonical or parsed.raw == parsed.mode.value


def _positive_number(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and value > 0


def validate_itinerary(data: dict[str, Any], round_trip: bool = False) -> ValidationResult:
    """Check a generated itinerary against the structural contract.

    Blocking failures land in ``errors`` and flip ``schema_valid``. Advisory
    issues (country info, non-canonical casing, string durations) only add
    ``warnings``. When ``round_trip`` is set a terminal repeat of the first
    city with 0 days is tolerated with a warning.
    """
    errors: list[str] = []
    warnings: list[str] = []
    cities = _as_list(data.get("cities"))
    activities = _as_list(data.get("activities"))
    segments = _as_list(data.get("travelSegments"))
    has_segments = bool(segments)

    top_level_valid = all(key in data for key in REQUIRED_TOP_LEVEL_KEYS)
    if not top_level_valid:
        errors.append("Top-level contract missing one or more required keys")

    city_count_valid = bool(cities)
    if not city_count_valid:
        errors.append("No cities returned")

    closing_stop = round_trip and bool(cities) and _is_closing_round_trip_stop(cities, len(cities) - 1)
    if closing_stop:
        warnings.append("Terminal round-trip city returned with 0 days (non-blocking)")

    cities_valid = all(
        _city_fields_valid(city, allow_zero_days=closing_stop and index == len(cities) - 1)
        for index, city in enumerate(cities)
    )
    required_fields_valid = (
        cities_valid
        and all(_travel_fields_valid(segment) for segment in segments)
        and all(_activity_fields_valid(activity) for activity in activities)
    )
    if not required_fields_valid:
        errors.append("One or more entries are missing mandatory fields or have wrong field types")

    coordinates_valid = all(_coordinates_valid(city) for city in cities)
    if not coordinates_valid:
        errors.append("One or more cities have invalid coordinates")

    country_entries = collect_country_entries(data.get("countryInfo"))
    country_present = bool(country_entries)
    country_valid = country_present and all(country_entry_valid(entry) for entry in country_entries)
    if not country_present:
        warnings.append("countryInfo is missing (non-blocking)")
    elif not country_valid:
        warnings.append("countryInfo is missing required fields or has invalid formatting (non-blocking)")

    markdown_valid = all(
        isinstance(city, dict)
        and all(pattern.search(str(city.get("description") or "")) for pattern in _MUST_SECTIONS)
        for city in cities
    )
    if not markdown_valid:
        errors.append("One or more city descriptions are missing required markdown sections")

    city_index_valid = all(
        isinstance(activity, dict) and _index_in_range(activity.get("cityIndex"), len(cities)) is not None
        for activity in activities
    )
    if not city_index_valid:
        errors.append("One or more activities have invalid cityIndex values")

    activity_types_valid = all(
        isinstance(activity, dict)
        and 1 <= len(normalize_activity_types(activity.get("activityTypes", activity.get("type")))) <= 3
        for activity in activities
    )
    if not activity_types_valid:
        errors.append("One or more activities have invalid activityTypes values")

    activity_types_canonical_valid = all(
        isinstance(activity, dict) and activity_types_canonical(activity.get("activityTypes"))
        for activity in activities
    )
    if activity_types_valid and not activity_types_canonical_valid:
        warnings.append("One or more activities use non-canonical activityTypes values (auto-normalized)")

    activity_duration_valid = all(
        isinstance(activity, dict) and parse_days(activity.get("duration")) is not None
        for activity in activities
    )
    if not activity_duration_valid:
        errors.append("One or more activities have invalid duration format (expected numeric days)")

    activity_duration_canonical = all(
        isinstance(activity, dict) and _positive_number(activity.get("duration"))
        for activity in activities
    )
    if activity_duration_valid and not activity_duration_canonical:
        warnings.append(
            "One or more activities use non-canonical duration values "
            "(expected numeric days, parser normalized strings)"
        )

    transport_valid = all(_transport_valid(segment, canonical=False) for segment in segments)
    if has_segments and not transport_valid:
        errors.append(
            "One or more travel segments have invalid transportMode values "
            "(must map to a supported enum value)"
        )

    transport_canonical = all(_transport_valid(segment, canonical=True) for segment in segments)
    if has_segments and transport_valid and not transport_canonical:
        warnings.append(
            "One or more travel segments use non-canonical transportMode values "
            "(expected lowercase enum, aliases/casing were normalized)"
        )

    travel_duration_valid = all(
        isinstance(segment, dict) and parse_hours(segment.get("duration")) is not None
        for segment in segments
    )
    if has_segments and not travel_duration_valid:
        errors.append("One or more travel segments have invalid duration format (expected numeric hours)")

    travel_duration_canonical = all(
        isinstance(segment, dict) and _positive_number(segment.get("duration")) for segment in segments
    )
    if has_segments and travel_duration_valid and not travel_duration_canonical:
        warnings.append(
            "One or more travel segments use non-canonical duration values "
            "(expected numeric hours, parser normalized strings)"
        )

    travel_indices_valid = all(_segment_indices_valid(segment, len(cities)) for segment in segments)
    if has_segments and not travel_indices_valid:
        errors.append("One or more travel segments have invalid city index values")

    checks: dict[str, Any] = {
        "topLevelContractValid": top_level_valid,
        "cityCountValid": city_count_valid,
        "requiredFieldsValid": required_fields_valid,
        "cityCoordinatesValid": coordinates_valid,
        "countryInfoPresent": country_present,
        "countryInfoValid": country_valid,
        "activityTypesValid": activity_types_valid,
        "activityTypesCanonicalValid": activity_types_canonical_valid,
        "activityDurationFormatValid": activity_duration_valid,
        "activityDurationCanonicalTypeValid": activity_duration_canonical,
        "cityIndexValid": city_index_valid,
        "markdownSectionsValid": markdown_valid,
        "transportModesValid": transport_valid,
        "transportModesCanonicalValid": transport_canonical,
        "travelDurationFormatValid": travel_duration_valid,
        "travelDurationCanonicalTypeValid": travel_duration_canonical,
        "travelSegmentIndicesValid": travel_indices_valid,
        "warningCount": len(warnings),
        "validationWarnings": list(warnings),
    }

    blocking = (
        top_level_valid,
        city_count_valid,
        required_fields_valid,
        coordinates_valid,
        activity_types_valid,
        activity_duration_valid,
        city_index_valid,
        markdown_valid,
        transport_valid,
        travel_duration_valid,
        travel_indices_valid,
    )
    return ValidationResult(
        schema_valid=all(blocking),
        checks=checks,
        errors=errors,
        warnings=warnings,
    )


def _segment_indices_valid(segment: Any, city_count: int) -> bool:
    if not isinstance(segment, dict):
        return False
    source = _index_in_range(segment.get("fromCityIndex"), city_count)
    target = _index_in_range(segment.get("toCityIndex"), city_count)
    return source is not None and target is not None and source != target

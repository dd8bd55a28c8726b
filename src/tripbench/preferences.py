from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Any, Iterable, Sequence

from tripbench.client import PROVIDERS
from tripbench.models import BenchmarkPreferences, ScenarioPreset

DEFAULT_DURATION_DAYS = 14

DEFAULT_TARGET_IDS = (
    "gemini:gemini-3.1-pro-preview",
    "gemini:gemini-3-pro-preview",
    "openai:gpt-5.2-pro",
    "anthropic:claude-sonnet-4.6",
    "openrouter:deepseek/deepseek-v3.2",
    "openrouter:moonshotai/kimi-k2.5",
)

DATE_INPUT_MODES = ("exact", "flex")
FLEX_WINDOWS = ("spring", "summer", "autumn", "winter", "shoulder")
TRAVELER_SETUPS = ("solo", "couple", "friends", "family")
TRIP_STYLE_MASKS = ("everything_except_remote_work", "culture_focused", "food_focused")
TRANSPORT_MASKS = ("automatic", "plane", "train", "camper")

DEFAULT_MASK: dict[str, Any] = {
    "destinations": "Japan",
    "date_input_mode": "exact",
    "start_date": None,
    "end_date": None,
    "flex_weeks": 2,
    "flex_window": "shoulder",
    "budget": "Medium",
    "pace": "Balanced",
    "specific_cities": "",
    "notes": "",
    "num_cities": None,
    "round_trip": True,
    "route_lock": False,
    "traveler_setup": "solo",
    "trip_style_mask": "everything_except_remote_work",
    "transport_mask": "automatic",
}

_SYSTEM_PRESET_SEED: tuple[dict[str, Any], ...] = (
    {
        "id": "system-southeast-asia-loop",
        "name": "Southeast Asia Loop",
        "description": "Backpacking loop: Thailand -> Cambodia -> Vietnam -> Laos -> Thailand.",
        "mask": {
            "destinations": "Thailand, Cambodia, Vietnam, Laos, Thailand",
            "date_input_mode": "flex",
            "flex_weeks": 4,
            "flex_window": "shoulder",
            "notes": "street food, hostels, temples, overnight buses",
        },
    },
    {
        "id": "system-northern-germany",
        "name": "Northern Germany",
        "description": "Short north test route: Hamburg, Husum, Flensburg.",
        "mask": {
            "destinations": "Hamburg, Husum, Flensburg",
            "date_input_mode": "flex",
            "flex_weeks": 1,
            "flex_window": "summer",
            "pace": "Relaxed",
            "notes": "harbor walks, coastal towns, train routes",
        },
    },
    {
        "id": "system-japan-classic",
        "name": "Japan Classic",
        "description": "Compact single-country baseline for quick model comparison.",
        "mask": {"destinations": "Japan", "date_input_mode": "flex", "flex_weeks": 2},
    },
)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def active_target_ids() -> frozenset[str]:
    return frozenset(f"{name}:{model}" for name, provider in PROVIDERS.items() for model in provider.allowed_models)


def default_dates(today: date | None = None) -> tuple[str, str]:
    today = today or date.today()
    return today.isoformat(), (today + timedelta(days=DEFAULT_DURATION_DAYS)).isoformat()


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _date_or_none(value: Any) -> str | None:
    text = _text(value)
    return text if _DATE_RE.match(text) else None


def _choice(value: Any, allowed: Sequence[str], fallback: str) -> str:
    text = _text(value)
    return text if text in allowed else fallback


def _positive_int_or_none(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        rounded = round(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    return rounded if rounded > 0 else None


def _flex_weeks(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    try:
        weeks = round(float(value))
    except (TypeError, ValueError, OverflowError):
        return fallback
    return max(1, min(12, weeks))


def with_dates(mask: dict[str, Any], start: str | None, end: str | None) -> dict[str, Any]:
    return {
        **mask,
        "start_date": _date_or_none(mask.get("start_date")) or _date_or_none(start),
        "end_date": _date_or_none(mask.get("end_date")) or _date_or_none(end),
    }


def system_presets(start: str | None = None, end: str | None = None) -> list[ScenarioPreset]:
    return [
        ScenarioPreset(
            id=seed["id"],
            name=seed["name"],
            description=seed["description"],
            kind="system",
            mask=with_dates({**DEFAULT_MASK, **seed["mask"]}, start, end),
        )
        for seed in _SYSTEM_PRESET_SEED
    ]


def normalize_mask(
    value: Any,
    fallback: dict[str, Any] | None = None,
    start: str | None = None,
    end: str | None = None,
) -> dict[str, Any]:
    fallback = fallback or DEFAULT_MASK
    raw = value if isinstance(value, dict) else {}
    round_trip = raw.get("round_trip")
    route_lock = raw.get("route_lock")
    mask = {
        "destinations": _text(raw.get("destinations")) or fallback["destinations"],
        "date_input_mode": _choice(raw.get("date_input_mode"), DATE_INPUT_MODES, fallback["date_input_mode"]),
        "start_date": _date_or_none(raw.get("start_date")) or fallback["start_date"],
        "end_date": _date_or_none(raw.get("end_date")) or fallback["end_date"],
        "flex_weeks": _flex_weeks(raw.get("flex_weeks"), fallback["flex_weeks"]),
        "flex_window": _choice(raw.get("flex_window"), FLEX_WINDOWS, fallback["flex_window"]),
        "budget": _text(raw.get("budget")) or fallback["budget"],
        "pace": _text(raw.get("pace")) or fallback["pace"],
        "specific_cities": _text(raw.get("specific_cities")),
        "notes": _text(raw.get("notes")),
        "num_cities": _positive_int_or_none(raw.get("num_cities")),
        "round_trip": round_trip if isinstance(round_trip, bool) else fallback["round_trip"],
        "route_lock": route_lock if isinstance(route_lock, bool) else fallback["route_lock"],
        "traveler_setup": _choice(raw.get("traveler_setup"), TRAVELER_SETUPS, fallback["traveler_setup"]),
        "trip_style_mask": _choice(raw.get("trip_style_mask"), TRIP_STYLE_MASKS, fallback["trip_style_mask"]),
        "transport_mask": _choice(raw.get("transport_mask"), TRANSPORT_MASKS, fallback["transport_mask"]),
    }
    return with_dates(mask, start, end)


def normalize_presets(
    value: Any,
    fallback: list[ScenarioPreset],
    start: str | None = None,
    end: str | None = None,
) -> list[ScenarioPreset]:
    by_id = {preset.id: preset for preset in fallback}
    presets: list[ScenarioPreset] = []
    seen: set[str] = set()
    for entry in value if isinstance(value, list) else []:
        if not isinstance(entry, dict):
            continue
        preset_id = _text(entry.get("id"))
        name = _text(entry.get("name"))
        if not preset_id or not name or preset_id in seen:
            continue
        seen.add(preset_id)
        base = by_id.get(preset_id)
        presets.append(
            ScenarioPreset(
                id=preset_id,
                name=name,
                description=_text(entry.get("description")),
                kind=_choice(entry.get("kind"), ("system", "custom"), "custom"),
                mask=normalize_mask(entry.get("mask"), base.mask if base else None, start, end),
            )
        )
    return presets or fallback


def normalize_target_ids(
    value: Any,
    allowed: Iterable[str] | None = None,
    fallback: Sequence[str] = DEFAULT_TARGET_IDS,
) -> list[str]:
    ids: list[str] = []
    for entry in value if isinstance(value, list) else []:
        text = _text(entry)
        if text and text not in ids:
            ids.append(text)

    allowed_set = frozenset(allowed) if allowed is not None else None
    if allowed_set is not None:
        ids = [entry for entry in ids if entry in allowed_set]
    if ids:
        return ids

    defaults = [entry for entry in fallback if entry] or list(DEFAULT_TARGET_IDS)
    if allowed_set is not None:
        permitted = [entry for entry in defaults if entry in allowed_set]
        if permitted:
            return permitted
    return defaults


def normalize_preferences(value: Any, today: date | None = None) -> BenchmarkPreferences:
    """Coerce a stored or caller-supplied payload into valid preferences.

    Unknown model ids are dropped against the active catalog, empty lists fall
    back to defaults and the selected preset falls back to the first preset.
    """
    raw = value if isinstance(value, dict) else {}
    start, end = default_dates(today)
    presets = normalize_presets(raw.get("presets"), system_presets(start, end), start, end)
    target_ids = normalize_target_ids(raw.get("target_ids", raw.get("modelTargets")), active_target_ids())
    selected = _text(raw.get("selected_preset_id", raw.get("selectedPresetId")))
    if not any(preset.id == selected for preset in presets):
        selected = presets[0].id
    return BenchmarkPreferences(target_ids=target_ids, presets=presets, selected_preset_id=selected)


def parse_target_id(target_id: str) -> tuple[str, str] | None:
    provider, sep, model = target_id.partition(":")
    if not sep or not provider.strip() or not model.strip():
        return None
    return provider.strip().lower(), model.strip()

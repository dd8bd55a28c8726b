"""Shape normalization for raw itinerary objects returned by providers.

Providers return loosely shaped JSON: activity types as lists or delimited
strings, country info as one object, a list, or a map keyed by country code.
The helpers here turn each of those into one canonical shape so the validator
and the trip normalizer never branch on input shape themselves.
"""

from __future__ import annotations

import re
from typing import Any

from tripbench.durations import to_finite
from tripbench.models import CountryInfo

ACTIVITY_TYPES = (
    "general",
    "sightseeing",
    "food",
    "culture",
    "relaxation",
    "nightlife",
    "sports",
    "hiking",
    "wildlife",
    "nature",
    "shopping",
    "adventure",
    "beach",
)

ACTIVITY_TYPE_COLORS = {
    "general": "bg-slate-100 border-slate-300 text-slate-800",
    "sightseeing": "bg-sky-100 border-sky-300 text-sky-800",
    "food": "bg-amber-100 border-amber-300 text-amber-800",
    "culture": "bg-violet-100 border-violet-300 text-violet-800",
    "relaxation": "bg-teal-100 border-teal-300 text-teal-800",
    "nightlife": "bg-fuchsia-100 border-fuchsia-300 text-fuchsia-800",
    "sports": "bg-red-100 border-red-300 text-red-800",
    "hiking": "bg-emerald-100 border-emerald-300 text-emerald-800",
    "wildlife": "bg-lime-100 border-lime-300 text-lime-800",
    "nature": "bg-green-100 border-green-300 text-green-800",
    "shopping": "bg-pink-100 border-pink-300 text-pink-800",
    "adventure": "bg-orange-100 border-orange-300 text-orange-800",
    "beach": "bg-cyan-100 border-cyan-300 text-cyan-800",
}

TRAVEL_COLOR = "bg-stone-800 border-stone-600 text-stone-100"

CITY_COLORS = (
    "#f43f5e",
    "#f97316",
    "#d97706",
    "#059669",
    "#0d9488",
    "#0891b2",
    "#0284c7",
    "#4f46e5",
    "#7c3aed",
    "#c026d3",
    "#475569",
    "#65a30d",
)

# Substring heuristics for free-text activity types, checked per token.
_ACTIVITY_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("food", "dining"), "food"),
    (("culture", "museum", "history"), "culture"),
    (("sight", "landmark"), "sightseeing"),
    (("beach", "coast"), "beach"),
    (("hike", "trek"), "hiking"),
    (("night", "party", "bar"), "nightlife"),
    (("nature", "park"), "nature"),
    (("wildlife", "safari"), "wildlife"),
    (("shop", "market"), "shopping"),
    (("adventure",), "adventure"),
    (("sport",), "sports"),
    (("relax", "spa"), "relaxation"),
)

_TOKEN_SPLIT_RE = re.compile(r"[\s,|/;]+")
_LANGUAGE_SPLIT_RE = re.compile(r"[,|;/]")


def has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def normalize_city_name(value: str) -> str:
    return " ".join(value.strip().lower().split())


def city_color(index: int) -> str:
    return CITY_COLORS[index % len(CITY_COLORS)]


def _activity_tokens(value: Any) -> list[str]:
    if isinstance(value, list):
        return [token for entry in value for token in _activity_tokens(entry)]
    if not isinstance(value, str):
        return []
    return [token.lower() for token in _TOKEN_SPLIT_RE.split(value) if token.strip()]


def normalize_activity_types(value: Any) -> list[str]:
    """Map free-text activity types onto the vocabulary, in vocabulary order."""
    accepted: set[str] = set()
    for token in _activity_tokens(value):
        if token in ACTIVITY_TYPE_COLORS:
            accepted.add(token)
            continue
        for needles, activity_type in _ACTIVITY_HINTS:
            if any(needle in token for needle in needles):
                accepted.add(activity_type)

    if not accepted:
        return ["general"]
    return [activity_type for activity_type in ACTIVITY_TYPES if activity_type in accepted]


def activity_types_canonical(value: Any) -> bool:
    if not isinstance(value, list) or not 1 <= len(value) <= 3:
        return False
    return all(
        isinstance(entry, str)
        and entry.strip() == entry.strip().lower()
        and entry.strip() in ACTIVITY_TYPE_COLORS
        for entry in value
    )


def activity_color(activity_types: list[str]) -> str:
    for activity_type in activity_types:
        if activity_type in ACTIVITY_TYPE_COLORS:
            return ACTIVITY_TYPE_COLORS[activity_type]
    return ACTIVITY_TYPE_COLORS["general"]


def collect_country_entries(value: Any) -> list[dict[str, Any]]:
    """Flatten countryInfo given as an object, a list of objects, or a map keyed by country code."""
    if isinstance(value, list):
        return [entry for entry in value if isinstance(entry, dict)]
    if not isinstance(value, dict):
        return []
    if _looks_like_country_entry(value):
        return [value]
    return [entry for entry in value.values() if isinstance(entry, dict)]


def _looks_like_country_entry(value: dict[str, Any]) -> bool:
    known = {
        "currency",
        "currencyCode",
        "currencyName",
        "exchangeRate",
        "exchangeRateToEUR",
        "languages",
        "electricSockets",
        "sockets",
        "visaInfoUrl",
        "visaLink",
        "auswaertigesAmtUrl",
        "auswaertigesAmtLink",
    }
    return any(key in value for key in known)


def _languages(value: Any) -> list[str]:
    if isinstance(value, list):
        return [entry.strip() for entry in value if has_text(entry)]
    if isinstance(value, str):
        return [part.strip() for part in _LANGUAGE_SPLIT_RE.split(value) if part.strip()]
    return []


def _first_text(entry: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        if has_text(entry.get(key)):
            return entry[key].strip()
    return None


def _exchange_rate(entry: dict[str, Any]) -> float | None:
    for key in ("exchangeRate", "exchangeRateToEUR"):
        rate = to_finite(entry.get(key))
        if rate is not None:
            return rate
    return None


def country_entry_valid(entry: dict[str, Any]) -> bool:
    has_currency = has_text(entry.get("currency")) or (
        has_text(entry.get("currencyCode")) and has_text(entry.get("currencyName"))
    )
    return (
        has_currency
        and _exchange_rate(entry) is not None
        and bool(_languages(entry.get("languages")))
        and _first_text(entry, "electricSockets", "sockets") is not None
        and _first_text(entry, "visaInfoUrl", "visaLink") is not None
        and _first_text(entry, "auswaertigesAmtUrl", "auswaertigesAmtLink") is not None
    )


def normalize_country_info(value: Any) -> CountryInfo | None:
    entries = collect_country_entries(value)
    if not entries:
        return None

    info = CountryInfo()
    seen_languages: set[str] = set()
    for entry in entries:
        for language in _languages(entry.get("languages")):
            key = language.lower()
            if key not in seen_languages:
                seen_languages.add(key)
                info.languages.append(language)
        if info.exchange_rate is None:
            info.exchange_rate = _exchange_rate(entry)
        if info.currency_code is None:
            info.currency_code = _first_text(entry, "currencyCode", "currency")
        if info.currency_name is None:
            info.currency_name = _first_text(entry, "currencyName", "currency")
        if info.electric_sockets is None:
            info.electric_sockets = _first_text(entry, "electricSockets", "sockets")
        if info.visa_info_url is None:
            info.visa_info_url = _first_text(entry, "visaInfoUrl", "visaLink")
        if info.travel_advisory_url is None:
            info.travel_advisory_url = _first_text(entry, "auswaertigesAmtUrl", "auswaertigesAmtLink")
    return info

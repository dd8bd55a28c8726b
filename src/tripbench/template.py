from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

from jinja2 import Environment, StrictUndefined

from tripbench.itinerary import ACTIVITY_TYPES
from tripbench.models import BenchmarkScenario
from tripbench.transport import MODEL_TRANSPORT_MODES

PromptRenderer = Callable[[dict[str, Any]], str]

DEFAULT_PROMPT_TEMPLATE = """\
Plan a detailed travel itinerary for: {{ mask.destinations }}.
{%- if mask.date_input_mode == "exact" and mask.start_date and mask.end_date %}
Travel dates: {{ mask.start_date }} to {{ mask.end_date }}.
{%- else %}
Trip length: about {{ mask.flex_weeks }} week{{ "s" if mask.flex_weeks != 1 else "" }}, preferably in {{ mask.flex_window }}.
{%- endif %}
{%- if mask.round_trip %}
Roundtrip is enabled. The FINAL city in "cities" MUST be the same place as the FIRST city (same city name and coordinates), representing the return to start.
{%- endif %}
{%- if mask.route_lock %}
Keep the destinations in the given order.
{%- endif %}
{%- if mask.num_cities %}
Visit exactly {{ mask.num_cities }} distinct cities/stops.
{%- endif %}
{%- if mask.specific_cities %}
You MUST include these cities: {{ mask.specific_cities }}.
{%- endif %}
Budget level: {{ mask.budget }}. Travel pace: {{ mask.pace }}. Travelers: {{ mask.traveler_setup }}.
Trip style: {{ mask.trip_style_mask | replace("_", " ") }}.
{%- if mask.transport_mask != "automatic" %}
Prefer {{ mask.transport_mask }} for travel between stops.
{%- endif %}
{%- if mask.notes %}
Notes: {{ mask.notes }}.
{%- endif %}

Return a list of consecutive cities/stops.
Important rules:
1. Provide accurate latitude and longitude for each city/stop.
2. Treat multi-day excursions (treks, cruises, hikes) as separate stops with their own days and coordinates.
3. For EACH city description, include these exact markdown sections:
   ### Must See (3-4 items)
   ### Must Try (3-4 local foods)
   ### Must Do (3-4 activities)
   Use - [ ] for all items.
4. Provide countryInfo (currency, exchange rate to EUR, languages, sockets, visa link, travel advisory link).
5. For EVERY activity return "activityTypes" as an array of 1-3 values ONLY from: [{{ activity_types | join(", ") }}].
6. Activity "duration" is a number of days; travel segment "duration" is a number of hours (1.5 for 1h 30m).
7. Travel segment "transportMode" must be one of: {{ transport_modes | join(", ") }}.
"""

_env = Environment(autoescape=False, undefined=StrictUndefined, keep_trailing_newline=False)


def _context(mask: dict[str, Any]) -> dict[str, Any]:
    return {
        "mask": mask,
        "activity_types": ACTIVITY_TYPES,
        "transport_modes": [mode.value for mode in MODEL_TRANSPORT_MODES],
    }


def default_template() -> PromptRenderer:
    template = _env.from_string(DEFAULT_PROMPT_TEMPLATE)
    return lambda mask: template.render(**_context(mask)).strip()


def load_template(path: Path) -> PromptRenderer:
    content = path.read_text()
    suffix = path.suffix.lower()
    if suffix in {".j2", ".jinja", ".jinja2"} or "{{" in content or "{%" in content:
        template = _env.from_string(content)
        return lambda mask: template.render(**_context(mask)).strip()
    return lambda mask: content.format_map(mask).strip()


def scenario_from_mask(mask: dict[str, Any], renderer: PromptRenderer | None = None) -> BenchmarkScenario:
    """Build a runnable scenario from a normalized preset mask."""
    render = renderer or default_template()
    return BenchmarkScenario(
        prompt=render(mask),
        start_date=mask.get("start_date"),
        round_trip=bool(mask.get("round_trip")),
        input=mask,
    )

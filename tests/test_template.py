import jinja2
import pytest

from tripbench.preferences import DEFAULT_MASK, normalize_mask, system_presets
from tripbench.template import default_template, load_template, scenario_from_mask


@pytest.fixture
def germany():
    return system_presets("2026-07-01", "2026-07-08")[1].mask


class TestDefaultTemplate:
    def test_flex_preset(self, germany):
        prompt = default_template()(germany)
        assert prompt.startswith("Plan a detailed travel itinerary for: Hamburg, Husum, Flensburg.")
        assert "about 1 week, preferably in summer" in prompt
        assert "Budget level: Medium. Travel pace: Relaxed." in prompt
        assert "Roundtrip is enabled." in prompt
        assert "### Must See" in prompt
        assert "general, sightseeing, food" in prompt

    def test_exact_dates(self):
        raw = {"destinations": "Portugal", "round_trip": False, "num_cities": 2}
        mask = normalize_mask(raw, None, "2026-05-01", "2026-05-06")
        prompt = default_template()(mask)
        assert "Travel dates: 2026-05-01 to 2026-05-06." in prompt
        assert "Visit exactly 2 distinct cities/stops." in prompt
        assert "Roundtrip" not in prompt

    def test_missing_mask_key_fails_loudly(self):
        with pytest.raises(jinja2.UndefinedError):
            default_template()({"destinations": "Japan"})


class TestLoadTemplate:
    def test_plain_text_uses_format_fields(self, tmp_path):
        path = tmp_path / "prompt.txt"
        path.write_text("Go to {destinations} on a {budget} budget.\n")
        assert load_template(path)(DEFAULT_MASK) == "Go to Japan on a Medium budget."

    def test_jinja_file(self, tmp_path):
        path = tmp_path / "prompt.j2"
        path.write_text("{{ mask.destinations | upper }} ({{ transport_modes | length }} modes)")
        assert load_template(path)(DEFAULT_MASK).startswith("JAPAN (")


def test_scenario_from_mask(germany):
    scenario = scenario_from_mask(germany)
    assert scenario.start_date == "2026-07-01"
    assert scenario.round_trip is True
    assert scenario.input == germany
    assert "Hamburg" in scenario.prompt

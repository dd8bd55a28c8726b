import pytest

from tripbench.transport import TransportMode, normalize_transport_mode, parse_transport_mode


class TestParseTransportMode:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("train", TransportMode.TRAIN),
            ("Flight", TransportMode.PLANE),
            ("FERRY", TransportMode.BOAT),
            ("on-foot", TransportMode.WALK),
            ("motor_bike", TransportMode.MOTORCYCLE),
            ("n/a", TransportMode.NA),
        ],
    )
    def test_aliases(self, value, expected):
        parsed = parse_transport_mode(value)
        assert parsed.recognized
        assert parsed.mode is expected

    def test_unknown_value_is_unrecognized(self):
        parsed = parse_transport_mode("teleporter")
        assert not parsed.recognized
        assert parsed.mode is TransportMode.NA

    def test_non_string_is_unrecognized(self):
        assert not parse_transport_mode(None).recognized
        assert not parse_transport_mode(3).recognized

    def test_raw_keeps_original_casing(self):
        assert parse_transport_mode(" Train ").raw == "Train"


def test_normalize_transport_mode():
    assert normalize_transport_mode("Coach") == "bus"
    assert normalize_transport_mode("hovercraft") == "na"

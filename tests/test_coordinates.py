import pytest

from certdesk.shared.coordinates import (
    DEFAULT_SOURCE_SIZE,
    map_point,
    resolve_source_size,
    unmap_point,
)


def test_name_field_on_landscape_a4_canvas():
    x, y = map_point(450, 100, 900, 636, 842, 595)
    assert x == pytest.approx(421.0)
    assert y == pytest.approx(595 - (100 / 636) * 595)
    assert y == pytest.approx(501.4, abs=0.2)


def test_vertical_axis_is_flipped():
    assert map_point(0, 0, 900, 636, 842, 595) == (0.0, 595.0)
    assert map_point(900, 636, 900, 636, 842, 595) == pytest.approx((842.0, 0.0))


@pytest.mark.parametrize(
    "x,y,sw,sh,tw,th",
    [
        (0, 0, 900, 636, 842, 595),
        (123.4, 567.8, 900, 636, 842, 595),
        (1199, 679, 1200, 680, 841.89, 1190.55),
        (5, 3, 10, 7, 595.28, 841.89),
    ],
)
def test_round_trip(x, y, sw, sh, tw, th):
    mx, my = map_point(x, y, sw, sh, tw, th)
    assert unmap_point(mx, my, sw, sh, tw, th) == pytest.approx((x, y))


def test_points_outside_the_template_are_not_clamped():
    x, y = map_point(1800, -636, 900, 636, 842, 595)
    assert x == pytest.approx(1684.0)
    assert y == pytest.approx(1190.0)


@pytest.mark.parametrize("sw,sh", [(0, 636), (900, 0), (None, None), ("", 636)])
def test_unknown_source_size_uses_default(sw, sh, caplog):
    caplog.set_level("WARNING", logger="certdesk.render")
    warnings = []
    mapped = map_point(450, 318, sw, sh, 842, 595, warnings)
    expected = map_point(450, 318, *DEFAULT_SOURCE_SIZE, 842, 595)
    assert mapped == pytest.approx(expected)
    assert len(warnings) == 1
    assert any("[CERT-COORD]" in message for message in caplog.messages)


def test_known_source_size_is_passed_through():
    warnings = []
    assert resolve_source_size(1200, 680, warnings) == (1200.0, 680.0)
    assert warnings == []


def test_target_size_must_be_positive():
    with pytest.raises(ValueError):
        map_point(1, 1, 900, 636, 0, 595)

"""Tests for the closed-form estimator (prealert/services/geo.py)."""

import math

import pytest
from pydantic import ValidationError

from prealert.models.geo import Coordinates
from prealert.services import geo

TIMES_SQUARE = Coordinates(lat=40.7580, lng=-73.9855)
CITYCARE = Coordinates(lat=40.7489, lng=-73.9680)


class TestStraightLine:
    def test_zero_for_same_point(self):
        assert geo.estimate_straight_line(TIMES_SQUARE, TIMES_SQUARE) == 0.0

    def test_symmetric(self):
        assert geo.estimate_straight_line(TIMES_SQUARE, CITYCARE) == geo.estimate_straight_line(
            CITYCARE, TIMES_SQUARE
        )

    def test_known_distance(self):
        london = Coordinates(lat=51.5074, lng=-0.1278)
        paris = Coordinates(lat=48.8566, lng=2.3522)
        assert geo.estimate_straight_line(london, paris) == pytest.approx(343.6, abs=0.5)

    def test_rounded_to_one_decimal(self):
        d = geo.estimate_straight_line(TIMES_SQUARE, CITYCARE)
        assert d == round(d, 1)
        assert d == pytest.approx(1.8, abs=0.1)


class TestEta:
    @pytest.mark.parametrize("distance", [0, 0.0, -1, -0.5])
    def test_zero_or_negative_is_zero(self, distance):
        assert geo.estimate_eta(distance) == 0

    @pytest.mark.parametrize("distance", [math.nan, math.inf, None, "5", True])
    def test_invalid_is_zero(self, distance):
        assert geo.estimate_eta(distance) == 0

    def test_minimum_three_minutes(self):
        assert geo.estimate_eta(0.1) == 3
        assert geo.estimate_eta(1.0) == 3

    def test_rounds_up(self):
        # 5.2 km at 40 km/h = 7.8 min
        assert geo.estimate_eta(5.2) == 8

    def test_exact_minutes_not_bumped(self):
        assert geo.estimate_eta(2.0) == 3
        assert geo.estimate_eta(4.0) == 6

    def test_custom_speed(self):
        assert geo.estimate_eta(10.0, speed_kmh=60) == 10


class TestStraightLineRoute:
    def test_fallback_shape(self):
        route = geo.straight_line_route(TIMES_SQUARE, CITYCARE)
        assert route.source == "straight_line"
        assert route.coordinates == [
            (TIMES_SQUARE.lng, TIMES_SQUARE.lat),
            (CITYCARE.lng, CITYCARE.lat),
        ]
        km = geo.haversine_km(TIMES_SQUARE, CITYCARE)
        assert route.distance_meters == pytest.approx(km * 1000)
        assert route.duration_seconds == pytest.approx(km * 120)


class TestHelpers:
    def test_within_radius(self):
        assert geo.is_within_radius(TIMES_SQUARE, CITYCARE, 2000)
        assert not geo.is_within_radius(TIMES_SQUARE, CITYCARE, 1000)

    def test_format_distance(self):
        assert geo.format_distance(850) == "850 m"
        assert geo.format_distance(1234) == "1.2 km"

    def test_format_duration(self):
        assert geo.format_duration(720) == "12 min"
        assert geo.format_duration(3900) == "1h 5m"

    def test_is_usable(self):
        assert geo.is_usable(TIMES_SQUARE)
        assert not geo.is_usable(None)


class TestCoordinates:
    def test_accepts_long_names(self):
        point = Coordinates.model_validate({"latitude": 40.1, "longitude": -73.2})
        assert (point.lat, point.lng) == (40.1, -73.2)

    @pytest.mark.parametrize("lat,lng", [(91, 0), (0, 181), (math.nan, 0), (0, math.inf)])
    def test_rejects_out_of_range(self, lat, lng):
        with pytest.raises(ValidationError):
            Coordinates(lat=lat, lng=lng)

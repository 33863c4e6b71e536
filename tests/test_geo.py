"""
Tests for the haversine distance and duration helpers
"""
import pytest

from geo_helpers import distance, route_distance, estimate_duration, validate_coordinate
from transport_errors import InvalidCoordinate, InvalidSpeed


class TestDistance:

    def test_zero_for_identical_points(self):
        assert distance((6.45, 3.39), (6.45, 3.39)) == 0

    def test_symmetric(self):
        a, b = (6.45, 3.39), (12.97, 77.59)
        assert distance(a, b) == pytest.approx(distance(b, a))

    def test_one_degree_of_latitude(self):
        # One degree along a meridian is R * pi / 180
        assert distance((0, 0), (1, 0)) == pytest.approx(111.195, abs=0.01)

    def test_latitude_out_of_range_names_field(self):
        with pytest.raises(InvalidCoordinate) as exc:
            distance((91, 0), (0, 0))
        assert exc.value.field == 'from_latitude'

    def test_longitude_out_of_range_names_field(self):
        with pytest.raises(InvalidCoordinate) as exc:
            distance((0, 0), (0, -181))
        assert exc.value.field == 'to_longitude'

    def test_non_numeric_coordinate(self):
        with pytest.raises(InvalidCoordinate):
            validate_coordinate('north', 3.39)


class TestRouteDistance:

    def test_empty_and_single_point(self):
        assert route_distance([]) == 0
        assert route_distance([(6.45, 3.39)]) == 0

    def test_sums_consecutive_legs(self):
        points = [(6.45, 3.39), (6.46, 3.40), (6.47, 3.41)]
        expected = distance(points[0], points[1]) + distance(points[1], points[2])
        assert route_distance(points) == pytest.approx(expected)


class TestEstimateDuration:

    def test_rounds_up_to_whole_minutes(self):
        assert estimate_duration(10, 30) == 20
        assert estimate_duration(3.13, 30) == 7

    def test_zero_distance(self):
        assert estimate_duration(0, 30) == 0

    @pytest.mark.parametrize('speed', [0, -5, None])
    def test_rejects_non_positive_speed(self, speed):
        with pytest.raises(InvalidSpeed) as exc:
            estimate_duration(10, speed)
        assert exc.value.field == 'assumed_speed_kmh'

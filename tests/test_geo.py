import pytest

from geo import distance_between, haversine_km, same_category


def test_same_point_is_zero() -> None:
    assert haversine_km(12.9716, 77.5946, 12.9716, 77.5946) == 0


def test_one_degree_of_latitude() -> None:
    assert haversine_km(0, 0, 1, 0) == pytest.approx(111.19, abs=0.01)


def test_distance_is_symmetric() -> None:
    a = {"lat": 12.9716, "lng": 77.5946}
    b = {"lat": 12.9345, "lng": 77.6050}
    assert distance_between(a, b) == pytest.approx(distance_between(b, a))
    assert 4 < distance_between(a, b) < 5


def test_same_category() -> None:
    assert same_category({"category": "produce"}, {"category": "produce"})
    assert not same_category({"category": "produce"}, {"category": "bakery"})

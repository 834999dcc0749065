import pytest

from jobclock.errors import FailedPrecondition, InvalidArgument
from jobclock.services import geofence
from jobclock.services.geofence import GeoPoint, GeofenceResult

from conftest import SITE_LAT, SITE_LNG, north_of_site

SITE = GeoPoint(SITE_LAT, SITE_LNG)


def test_distance_to_self_is_zero():
    assert geofence.distance(SITE, SITE) == 0


def test_distance_is_symmetric():
    other = GeoPoint(40.7128, -74.0060)
    assert geofence.distance(SITE, other) == pytest.approx(geofence.distance(other, SITE))


def test_distance_known_pair():
    # SF to NYC is about 4130 km
    d = geofence.distance(SITE, GeoPoint(40.7128, -74.0060))
    assert 4_100_000 < d < 4_160_000


def test_antipodal_points_do_not_raise():
    d = geofence.distance(GeoPoint(0, 0), GeoPoint(0, 180))
    assert d == pytest.approx(geofence.EARTH_RADIUS_M * 3.141592653589793, rel=1e-6)


@pytest.mark.parametrize("radius,expected", [(None, 100), (10, 75), (100, 100), (150, 150), (1000, 250)])
def test_base_radius_is_clamped(radius, expected):
    assert geofence.base_radius(radius) == expected


@pytest.mark.parametrize("accuracy,expected", [(None, 115), (0, 115), (5, 115), (15, 115), (40, 140)])
def test_effective_radius_uses_accuracy_floor(accuracy, expected):
    assert geofence.effective_radius(100, accuracy) == expected


def test_point_inside_fence_is_valid():
    lat, lng = north_of_site(42)
    result = geofence.evaluate(SITE, 100, GeoPoint(lat, lng), accuracy_m=10)
    assert result.distance_m == pytest.approx(42, abs=0.5)
    assert result.valid


def test_point_outside_fence_is_invalid():
    lat, lng = north_of_site(300)
    result = geofence.evaluate(SITE, 100, GeoPoint(lat, lng), accuracy_m=10)
    assert result.distance_m == pytest.approx(300, abs=1)
    assert result.effective_radius_m == 115
    assert not result.valid


def test_boundary_is_inclusive():
    assert GeofenceResult(distance_m=115.0, base_radius_m=100, effective_radius_m=115.0, accuracy_m=None).valid
    assert not GeofenceResult(distance_m=115.01, base_radius_m=100, effective_radius_m=115.0, accuracy_m=None).valid


def test_large_accuracy_widens_fence():
    lat, lng = north_of_site(300)
    assert geofence.evaluate(SITE, 100, GeoPoint(lat, lng), accuracy_m=250).valid


@pytest.mark.parametrize("lat,lng", [(91, 0), (-91, 0), (0, 181), (0, -181), ("abc", 0), (None, 0), (float("nan"), 0)])
def test_invalid_coordinates_rejected(lat, lng):
    with pytest.raises(InvalidArgument):
        geofence.validate_coordinates(lat, lng)


@pytest.mark.parametrize("accuracy", [-1, 2001, "x", float("nan")])
def test_invalid_accuracy_rejected(accuracy):
    with pytest.raises(InvalidArgument):
        geofence.validate_accuracy(accuracy)


def test_accuracy_ceiling():
    geofence.check_accuracy_ceiling(200)
    geofence.check_accuracy_ceiling(None)
    with pytest.raises(FailedPrecondition) as exc:
        geofence.check_accuracy_ceiling(201)
    assert "GPS accuracy too low" in exc.value.message

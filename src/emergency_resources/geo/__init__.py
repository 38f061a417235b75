from emergency_resources.geo.distance import EARTH_RADIUS_KM, distance_km, validate_coordinates

__all__ = ["EARTH_RADIUS_KM", "distance_km", "validate_coordinates"]

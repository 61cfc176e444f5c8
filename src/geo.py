"""
Geodesic helpers shared by the pipeline stages.

Every radius / nearest-neighbour query goes through a sklearn BallTree built
with the haversine metric, so all distances are great-circle kilometres.
"""

import math

import numpy as np
from sklearn.neighbors import BallTree

EARTH_RADIUS_KM = 6371.0088


def valid_coordinates(lat, lng):
    """True when lat/lng are finite numbers inside WGS84 bounds."""
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lng) or math.isinf(lat) or math.isinf(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def haversine_km(lat1, lng1, lat2, lng2):
    """Great-circle distance in km; accepts scalars or numpy arrays."""
    lat1, lng1, lat2, lng2 = map(np.radians, (lat1, lng1, lat2, lng2))
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = np.sin(dlat / 2.0) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlng / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def to_radians(lats, lngs):
    """Stack lat/lng degrees into the (n, 2) radian array BallTree expects."""
    return np.radians(np.column_stack([np.asarray(lats, dtype=float), np.asarray(lngs, dtype=float)]))


def build_tree(lats, lngs):
    """BallTree over the points, or None when there are no points."""
    if len(lats) == 0:
        return None
    return BallTree(to_radians(lats, lngs), metric="haversine")


def km_to_rad(km):
    return km / EARTH_RADIUS_KM


def rad_to_km(rad):
    return np.asarray(rad) * EARTH_RADIUS_KM


def neighbours_within(tree, lat, lng, radius_km):
    """
    Indices and distances (km) of tree points within radius_km of one point,
    sorted nearest first.
    """
    if tree is None:
        return np.array([], dtype=int), np.array([], dtype=float)
    ind, dist = tree.query_radius(
        to_radians([lat], [lng]), r=km_to_rad(radius_km), return_distance=True, sort_results=True
    )
    return ind[0], rad_to_km(dist[0])


def count_within(tree, lat, lng, radius_km):
    if tree is None:
        return 0
    return int(tree.query_radius(to_radians([lat], [lng]), r=km_to_rad(radius_km), count_only=True)[0])


def nearest(tree, lat, lng, k):
    """Distances (km) to the k nearest tree points (fewer if the tree is small)."""
    if tree is None:
        return np.array([], dtype=float)
    k = min(k, len(tree.get_arrays()[0]))
    dist, _ = tree.query(to_radians([lat], [lng]), k=k)
    return rad_to_km(dist[0])

"""
Path correction module for pyctcrw.

Re-routes predicted tracks around barrier polygons using an R-tree index of the
barrier and shortest paths on a visibility graph.
"""

from pyctcrw.correcting.barrier import BarrierGeometry, find_runs, fix_path, route_around

__all__ = [
    'BarrierGeometry',
    'find_runs',
    'route_around',
    'fix_path',
]

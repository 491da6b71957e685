"""
Barrier-aware path correction for pyctcrw.

Predicted CTCRW tracks know nothing about land: a smoothed path between two
coastal fixes can cut straight across a peninsula. This module detects the
parts of a track that intersect a barrier (a set of polygons) and re-routes
them around the barrier boundary.

The correction is a deliberate approximation. Refitting the state-space model
under a hard land-avoidance constraint is prohibitively expensive, so each
offending run is replaced locally, at bounded cost:

1. Detect points strictly inside the barrier and segments whose interior
   crosses the barrier interior; group them into maximal runs.
2. Take the last clean point before a run and the first clean point after it
   as anchors (runs touching the ends of the track are first snapped onto the
   barrier boundary).
3. Route between the anchors with Dijkstra's algorithm (iGraph) on a visibility
   graph over the convex corners of the slightly buffered barrier, clipped to
   a window around the anchors that only grows when no route fits inside it.
4. Splice: original points of the run are moved onto the detour at arc
   lengths proportional to their times, and the detour's corner vertices are
   inserted with interpolated times. Velocities come from a local CTCRW
   filter/smoother pass with the fitted parameters, so they stay continuous
   across the splice.
5. Repeat until no run remains or the iteration bound is hit.

Tie-break: the shortest detour wins; among detours of equal length, the one on
the left-hand side of the direction of travel is chosen.
"""

import warnings
from typing import Iterable, List, Optional, Tuple, Union

import igraph as ig
import numpy as np
import shapely
from rtree import index
from shapely.geometry import MultiPolygon, Point, Polygon
from shapely.geometry.polygon import orient
from shapely.ops import nearest_points
from tqdm import tqdm

from pyctcrw.errors import BarrierUnresolvedError, ConfigurationError
from pyctcrw.modeling.likelihood import kalman_filter
from pyctcrw.predicting.smoother import Track, rts_smoother

# DE-9IM pattern: the interiors of the two geometries intersect
_CROSSES_INTERIOR = "T********"


def _flatten_polygons(geometries) -> List[Polygon]:
    if isinstance(geometries, (Polygon, MultiPolygon)):
        geometries = [geometries]
    polygons = []
    for geom in geometries:
        if isinstance(geom, Polygon):
            parts = [geom]
        elif isinstance(geom, MultiPolygon):
            parts = list(geom.geoms)
        else:
            raise ConfigurationError(f"barrier geometry must be polygonal, got {geom.geom_type}",
                                     stage="correct")
        for part in parts:
            if part.is_empty:
                continue
            if not part.is_valid:
                raise ConfigurationError(f"invalid barrier polygon: {shapely.is_valid_reason(part)}",
                                         stage="correct")
            polygons.append(part)
    return polygons


class BarrierGeometry:
    """
    Immutable set of forbidden polygons with an R-tree index of their bounds.

    Parameters
    ----------
    geometries : Polygon, MultiPolygon, or iterable of them
        Forbidden regions in the same projected coordinate system as the
        observations. Holes (e.g. lakes on an island) are treated as allowed.

    Notes
    -----
    The object is read-only after construction and can be shared by any
    number of concurrent :func:`fix_path` calls. Pickling rebuilds the R-tree
    index, so the geometry can be sent to worker processes.
    """

    def __init__(self, geometries: Union[Polygon, MultiPolygon, Iterable]):
        polygons = _flatten_polygons(geometries)
        if not polygons:
            raise ConfigurationError("barrier geometry is empty", stage="correct")
        self._polygons = tuple(polygons)
        self._build()

    def _build(self):
        self.union = shapely.unary_union(self._polygons)
        shapely.prepare(self.union)

        # ========== Build R-tree Spatial Index ==========
        bounds_array = shapely.bounds(np.array(self._polygons, dtype=object))

        def generate_items():
            for i, b in enumerate(bounds_array):
                # rtree requires exact float types, not numpy scalars
                yield (i, tuple(float(v) for v in b), None)

        self._index = index.Index(generate_items())

    def __getstate__(self):
        return {"polygons": self._polygons}

    def __setstate__(self, state):
        self._polygons = state["polygons"]
        self._build()

    @property
    def polygons(self) -> Tuple[Polygon, ...]:
        return self._polygons

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return tuple(float(v) for v in self.union.bounds)

    @property
    def diagonal(self) -> float:
        minx, miny, maxx, maxy = self.bounds
        return float(np.hypot(maxx - minx, maxy - miny))

    def contains(self, x, y) -> np.ndarray:
        """True where a point lies strictly inside the barrier (boundary excluded)."""
        return np.asarray(shapely.contains_xy(self.union, np.asarray(x, dtype=float),
                                              np.asarray(y, dtype=float)), dtype=bool)

    def crossing_segments(self, coords: np.ndarray) -> np.ndarray:
        """
        Flag consecutive-point segments whose interior crosses the barrier interior.

        Parameters
        ----------
        coords : np.ndarray, shape (n, 2)

        Returns
        -------
        np.ndarray of bool, shape (n - 1,)
        """
        coords = np.asarray(coords, dtype=float)
        flags = np.zeros(max(len(coords) - 1, 0), dtype=bool)
        if flags.size == 0:
            return flags
        starts, ends = coords[:-1], coords[1:]
        nonzero = np.any(starts != ends, axis=1)
        if np.any(nonzero):
            lines = shapely.linestrings(np.stack([starts[nonzero], ends[nonzero]], axis=1))
            # prepared intersects first; DE-9IM only for segments that touch the barrier
            touching = np.asarray(shapely.intersects(lines, self.union), dtype=bool)
            hits = np.zeros(lines.size, dtype=bool)
            if touching.any():
                hits[touching] = shapely.relate_pattern(lines[touching], self.union, _CROSSES_INTERIOR)
            flags[nonzero] = hits
        return flags

    def candidates(self, bbox: Tuple[float, float, float, float]) -> List[int]:
        """Indices of polygons whose bounds intersect ``bbox`` (minx, miny, maxx, maxy)."""
        return sorted(self._index.intersection(tuple(float(v) for v in bbox)))

    def __repr__(self) -> str:
        return f"BarrierGeometry(polygons={len(self._polygons)}, bounds={self.bounds})"


# ========== Detour Routing ==========

# Mitre joins keep buffered corners within this many clearances of the barrier
_MITRE_LIMIT = 5.0


def _expand(bbox, margin: float) -> Tuple[float, float, float, float]:
    return (bbox[0] - margin, bbox[1] - margin, bbox[2] + margin, bbox[3] + margin)


def _covers(outer, inner) -> bool:
    return (outer[0] <= inner[0] and outer[1] <= inner[1]
            and outer[2] >= inner[2] and outer[3] >= inner[3])


def _polygonal(geometry) -> Optional[MultiPolygon]:
    # Clipping can leave points or lines where a polygon only touches the box
    parts = shapely.get_parts(shapely.get_parts(geometry))
    polygons = [p for p in parts if p.geom_type == "Polygon" and not p.is_empty]
    return MultiPolygon(polygons) if polygons else None


def _clip_barrier(barrier: BarrierGeometry, bbox) -> Optional[MultiPolygon]:
    """Barrier polygons whose bounds meet ``bbox``, clipped to it."""
    polygon_ids = barrier.candidates(bbox)
    if not polygon_ids:
        return None
    nearby = shapely.unary_union([barrier.polygons[i] for i in polygon_ids])
    return _polygonal(shapely.intersection(nearby, shapely.box(*bbox)))


def _cross(u: np.ndarray, v: np.ndarray) -> np.ndarray:
    return u[..., 0] * v[..., 1] - u[..., 1] * v[..., 0]


def _convex_corners(barrier: BarrierGeometry, obstacles, clearance: float):
    """
    Convex corners of the buffered obstacles, with their ring neighbours.

    Shortest paths around polygons only bend at convex corners, so reflex
    vertices never enter the visibility graph. Corners strictly inside the
    full barrier are dropped.

    Returns
    -------
    corners, before, after : np.ndarray, shape (k, 2)
        Corner coordinates and the previous and next vertex on their ring.
    """
    buffered = obstacles.buffer(clearance, join_style="mitre", mitre_limit=_MITRE_LIMIT)
    corners, before, after = [], [], []
    for part in shapely.get_parts(buffered):
        # Exterior counter-clockwise, holes clockwise: the obstacle is always on the left
        part = orient(part, sign=1.0)
        for ring in [part.exterior, *part.interiors]:
            coords = np.asarray(ring.coords)[:-1]
            if len(coords) < 3:
                continue
            prev = np.roll(coords, 1, axis=0)
            nxt = np.roll(coords, -1, axis=0)
            # left turn == convex towards the obstacle
            convex = _cross(coords - prev, nxt - coords) > 0
            corners.append(coords[convex])
            before.append(prev[convex])
            after.append(nxt[convex])

    if not corners:
        empty = np.zeros((0, 2))
        return empty, empty, empty
    corners, before, after = np.vstack(corners), np.vstack(before), np.vstack(after)
    _, first = np.unique(corners, axis=0, return_index=True)
    first = np.sort(first)
    corners, before, after = corners[first], before[first], after[first]
    outside = ~barrier.contains(corners[:, 0], corners[:, 1])
    return corners[outside], before[outside], after[outside]


def _tangent(d: np.ndarray, v: np.ndarray, p: np.ndarray, n: np.ndarray) -> np.ndarray:
    """True where the line through corner ``v`` along ``d`` keeps both ring neighbours on one side."""
    e1, e2 = p - v, n - v
    s1, s2 = _cross(d, e1), _cross(d, e2)
    tol = 1e-9 * np.hypot(d[..., 0], d[..., 1]) * (np.hypot(e1[..., 0], e1[..., 1])
                                                   + np.hypot(e2[..., 0], e2[..., 1]))
    return ((s1 >= -tol) & (s2 >= -tol)) | ((s1 <= tol) & (s2 <= tol))


def _signed_area(path: np.ndarray) -> float:
    """Shoelace area of the closed polygon path -> back to its first point."""
    x, y = path[:, 0], path[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def _visibility_route(a: np.ndarray, b: np.ndarray, corners: np.ndarray, before: np.ndarray,
                      after: np.ndarray, obstacles) -> Optional[np.ndarray]:
    nodes = np.vstack([a, b, corners])
    m = len(nodes)

    # ========== Candidate Edges (bitangents only) ==========
    # Node 0 and 1 are the anchors; corner k sits at node k + 2. A shortest
    # path only uses edges tangent to the obstacle at every corner they touch.
    sources, targets = [], []
    for i in range(m - 1):
        j = np.arange(i + 1, m)
        d = nodes[j] - nodes[i]
        ok = np.hypot(d[:, 0], d[:, 1]) > 0
        if i >= 2:
            ok &= _tangent(d, nodes[i], before[i - 2], after[i - 2])
        at_corner = j >= 2
        ok[at_corner] &= _tangent(d[at_corner], nodes[j[at_corner]],
                                  before[j[at_corner] - 2], after[j[at_corner] - 2])
        sources.append(np.full(int(ok.sum()), i))
        targets.append(j[ok])
    if not sources:
        return None
    ii, jj = np.concatenate(sources), np.concatenate(targets)
    if ii.size == 0:
        return None

    # ========== Visibility Against the Clipped Barrier ==========
    lines = shapely.linestrings(np.stack([nodes[ii], nodes[jj]], axis=1))
    blocked = np.zeros(ii.size, dtype=bool)
    # prepared intersects first; the DE-9IM test only for segments that touch
    touching = np.asarray(shapely.intersects(lines, obstacles), dtype=bool)
    if touching.any():
        blocked[touching] = shapely.relate_pattern(lines[touching], obstacles, _CROSSES_INTERIOR)
    ii, jj = ii[~blocked], jj[~blocked]
    lengths = np.hypot(nodes[jj, 0] - nodes[ii, 0], nodes[jj, 1] - nodes[ii, 1])

    g = ig.Graph(n=m, edges=np.column_stack([ii, jj]).tolist(), directed=False)
    g.es["length"] = lengths.tolist()

    # ========== Dijkstra Shortest Paths (all ties) ==========
    with warnings.catch_warnings():
        # igraph warns when the target is unreachable; that case returns None below
        warnings.simplefilter("ignore", RuntimeWarning)
        vpaths = g.get_all_shortest_paths(0, to=1, weights="length")
    vpaths = [p for p in vpaths if p and p[-1] == 1]
    if not vpaths:
        return None

    # Equal-length detours: prefer the left-hand side of travel
    routes = [nodes[p] for p in vpaths]
    return min(routes, key=_signed_area)


def route_around(barrier: BarrierGeometry, a, b, clearance: float) -> Optional[np.ndarray]:
    """
    Shortest barrier-avoiding polyline from ``a`` to ``b``.

    The search is local. The barrier is clipped to a window around the
    anchors (polygons found through the R-tree index) and the visibility graph
    is built from the convex corners of the clipped, buffered obstacles only,
    so the cost depends on the barrier detail near the run rather than on the
    size of the whole barrier. When no route exists inside the window it is
    widened four-fold, up to the full barrier extent.

    Parameters
    ----------
    barrier : BarrierGeometry
    a, b : array-like, shape (2,)
        Anchor points outside (or on the boundary of) the barrier.
    clearance : float
        Buffer distance of the detour vertices from the barrier.

    Returns
    -------
    np.ndarray, shape (k, 2) or None
        Route vertices from ``a`` to ``b`` inclusive, or None when the anchors
        are not connected outside the barrier.
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    anchors = (min(a[0], b[0]), min(a[1], b[1]), max(a[0], b[0]), max(a[1], b[1]))
    margin = max(0.5 * float(np.hypot(*(b - a))), 10.0 * _MITRE_LIMIT * clearance)

    while True:
        window = _expand(anchors, margin)
        # Buffered corners reach at most _MITRE_LIMIT clearances past the window,
        # so every candidate edge lies inside the larger checking box
        check = _expand(window, 2.0 * _MITRE_LIMIT * clearance)
        obstacles = _clip_barrier(barrier, check)
        if obstacles is None:
            return np.vstack([a, b])
        shapely.prepare(obstacles)

        inner = _polygonal(shapely.intersection(obstacles, shapely.box(*window)))
        if inner is None:
            corners = before = after = np.zeros((0, 2))
        else:
            corners, before, after = _convex_corners(barrier, inner, clearance)
        route = _visibility_route(a, b, corners, before, after, obstacles)
        if route is not None or _covers(window, barrier.bounds):
            return route
        margin *= 4.0

# ========== Run Detection ==========

def find_runs(barrier: BarrierGeometry, positions: np.ndarray) -> List[Tuple[int, int]]:
    """
    Maximal runs of track points/segments intersecting the barrier.

    Returns
    -------
    list of (start, stop)
        Point index ranges; ``start`` and ``stop`` are the anchor points
        bracketing the run (they are outside unless the run touches an end of
        the track).
    """
    positions = np.asarray(positions, dtype=float)
    n = len(positions)
    inside = barrier.contains(positions[:, 0], positions[:, 1])
    if n == 1:
        return [(0, 0)] if inside[0] else []

    # Segment k joins points k and k+1; it is bad if it crosses or touches an inside point
    bad = barrier.crossing_segments(positions) | inside[:-1] | inside[1:]
    runs = []
    k = 0
    while k < n - 1:
        if not bad[k]:
            k += 1
            continue
        # Consecutive bad segments form one run; its anchors are the first
        # point of the first segment and the last point of the last one
        start = k
        while k < n - 1 and bad[k]:
            k += 1
        runs.append((start, k))
    return runs


def _describe_runs(positions, runs):
    return [
        {"start": int(s), "stop": int(e), "coordinates": np.asarray(positions[s:e + 1]).tolist()}
        for s, e in runs
    ]


# ========== Splicing ==========

def _arc_lengths(route: np.ndarray) -> np.ndarray:
    return np.concatenate([[0.0], np.cumsum(np.hypot(*np.diff(route, axis=0).T))])


def _place_along(route: np.ndarray, cum: np.ndarray, distances: np.ndarray) -> np.ndarray:
    return np.column_stack([np.interp(distances, cum, route[:, 0]),
                            np.interp(distances, cum, route[:, 1])])


def _splice(state: dict, a: int, b: int, route: np.ndarray, sigma2: float, beta: float,
            splice_sd: float) -> None:
    """Replace points a+1..b-1 of ``state`` by the detour ``route`` (in place)."""
    times, means, covs = state["times"], state["means"], state["covs"]
    t_a, t_b = times[a], times[b]

    cum = _arc_lengths(route)
    total = cum[-1]
    # Anchors a and b stay; everything strictly between them is replaced
    interior = np.arange(a + 1, b)

    # ========== Arc-Length Placement ==========
    if t_b > t_a:
        frac_orig = (times[interior] - t_a) / (t_b - t_a)
    else:
        frac_orig = np.arange(1, interior.size + 1) / (interior.size + 1)
    s_orig = frac_orig * total
    # Route corners get times in proportion to their arc length
    s_vert = cum[1:-1]
    t_vert = t_a + (t_b - t_a) * (s_vert / total if total > 0 else np.zeros_like(s_vert))
    # A corner landing on an original time would duplicate that point
    dup = np.isin(t_vert, times[interior]) if t_b > t_a else np.zeros(s_vert.size, dtype=bool)
    s_vert, t_vert = s_vert[~dup], t_vert[~dup]

    s_all = np.concatenate([s_orig, s_vert])
    t_all = np.concatenate([times[interior], t_vert])
    is_orig = np.concatenate([np.ones(interior.size, bool), np.zeros(s_vert.size, bool)])
    # Sort along the route; at equal arc length original points come first
    order = np.lexsort((~is_orig, s_all))
    s_all, t_all, is_orig = s_all[order], t_all[order], is_orig[order]
    t_all = np.maximum.accumulate(np.clip(t_all, t_a, t_b))  # non-decreasing

    new_pos = _place_along(route, cum, s_all)
    w = s_all / total if total > 0 else np.zeros_like(s_all)
    # Inserted corners: covariance interpolated between the anchors
    new_cov = (1.0 - w)[:, None, None] * covs[a] + w[:, None, None] * covs[b]
    # Moved points keep their own covariance and observed flag
    orig_rows = interior[order[is_orig]]
    new_cov[is_orig] = covs[orig_rows]
    new_observed = np.zeros(s_all.size, dtype=bool)
    new_observed[is_orig] = state["observed"][orig_rows]

    # ========== Local CTCRW Pass for Velocities ==========
    # Anchors plus the new positions as tight pseudo-observations
    t_w = np.concatenate([[t_a], t_all, [t_b]])
    z_w = np.vstack([means[a, :2], new_pos, means[b, :2]])
    r_w = np.full((t_w.size, 2), splice_sd ** 2)
    local = kalman_filter(t_w, z_w, r_w, sigma2, beta, means[a], covs[a])
    x_smooth, _ = rts_smoother(local)

    # Positions stay exactly on the route; only velocities come from the smoother
    new_means = np.column_stack([new_pos, x_smooth[1:-1, 2:]])

    state["times"] = np.concatenate([times[:a + 1], t_all, times[b:]])
    state["means"] = np.vstack([means[:a + 1], new_means, means[b:]])
    state["covs"] = np.concatenate([covs[:a + 1], new_cov, covs[b:]])
    state["observed"] = np.concatenate([state["observed"][:a + 1], new_observed, state["observed"][b:]])
    state["corrected"] = np.concatenate([state["corrected"][:a + 1], np.ones(s_all.size, bool),
                                         state["corrected"][b:]])


def _snap_ends(state: dict, barrier: BarrierGeometry, boundary) -> bool:
    """Move leading and trailing inside points onto the buffered boundary."""
    pos = state["means"][:, :2]
    inside = barrier.contains(pos[:, 0], pos[:, 1])
    n = len(pos)
    targets = []
    # Leading inside points have no clean anchor before them
    k = 0
    while k < n and inside[k]:
        targets.append(k)
        k += 1
    # Trailing ones have none after them
    k = n - 1
    while k >= 0 and inside[k] and k not in targets:
        targets.append(k)
        k -= 1

    for k in targets:
        _, snapped = nearest_points(Point(pos[k]), boundary)
        state["means"][k, :2] = (snapped.x, snapped.y)
        state["corrected"][k] = True
    return bool(targets)


def fix_path(
    track: Track,
    fit,
    barrier: BarrierGeometry,
    clearance: Optional[float] = None,
    splice_sd: Optional[float] = None,
    max_iterations: int = 25,
    verbose: bool = False,
) -> Track:
    """
    Re-route the parts of a predicted track that intersect a barrier.

    Parameters
    ----------
    track : Track
        Output of :func:`pyctcrw.predicting.smoother.predict`.
    fit : FitResult
        The converged fit used to produce ``track``.
    barrier : BarrierGeometry
        Forbidden regions. Never modified.
    clearance : float or None, default=None
        Distance kept between detour vertices and the barrier. Defaults to
        ``1e-6`` times the diagonal of the barrier's bounding box.
    splice_sd : float or None, default=None
        Pseudo-observation standard deviation of the detour positions in the
        local smoothing pass that sets the spliced velocities. Defaults to
        ``clearance``.
    max_iterations : int, default=25
        Safety bound on detect-and-splice passes.
    verbose : bool, default=False
        Show a progress bar over correction passes.

    Returns
    -------
    Track
        The corrected track (the input object itself when nothing intersects
        the barrier). Points that were moved or inserted are flagged
        ``corrected``.

    Raises
    ------
    UnfitModelError
        If ``fit`` did not converge.
    BarrierUnresolvedError
        If intersections remain after ``max_iterations`` passes or a run cannot
        be routed around the barrier.

    Notes
    -----
    No point of the returned track lies strictly inside the barrier; points on
    the boundary are accepted. Running the correction again on its own output
    returns that output unchanged.
    """
    fit.require_converged(stage="correct")
    if max_iterations < 1:
        raise ConfigurationError("max_iterations must be at least 1", stage="correct")

    if clearance is None:
        clearance = max(1e-6 * barrier.diagonal, 1e-9)
    if not (clearance > 0):
        raise ConfigurationError("clearance must be positive", stage="correct")
    splice_sd = clearance if splice_sd is None else splice_sd
    if not (splice_sd > 0):
        raise ConfigurationError("splice_sd must be positive", stage="correct")

    if not find_runs(barrier, track.positions):
        return track

    sigma2, beta = fit.model.process_parameters(fit.parameters)
    boundary = barrier.union.buffer(clearance, join_style="mitre").boundary

    state = {
        "times": np.array(track.times, dtype=float),
        "means": np.array(track.means, dtype=float),
        "covs": np.array(track.covariances, dtype=float),
        "observed": np.array(track.observed, dtype=bool),
        "corrected": np.array(track.corrected, dtype=bool),
    }

    passes = range(max_iterations)
    if verbose:
        passes = tqdm(passes, desc="barrier correction")

    runs = []
    for _ in passes:
        _snap_ends(state, barrier, boundary)
        runs = find_runs(barrier, state["means"][:, :2])
        if not runs:
            break

        unroutable = []
        # Right to left so earlier indices stay valid after each splice
        for a, b in reversed(runs):
            pos = state["means"][:, :2]
            route = route_around(barrier, pos[a], pos[b], clearance)
            if route is None:
                unroutable.append((a, b))
                continue
            _splice(state, a, b, route, sigma2, beta, splice_sd)

        if len(unroutable) == len(runs):
            runs = find_runs(barrier, state["means"][:, :2])
            raise BarrierUnresolvedError(
                f"{len(runs)} run(s) cannot be routed around the barrier",
                runs=_describe_runs(state["means"][:, :2], runs),
                track=_state_track(state, track),
                deployment=track.deployment,
            )
    else:
        runs = find_runs(barrier, state["means"][:, :2])

    if runs:
        raise BarrierUnresolvedError(
            f"{len(runs)} barrier intersection run(s) left after {max_iterations} passes",
            runs=_describe_runs(state["means"][:, :2], runs),
            track=_state_track(state, track),
            deployment=track.deployment,
        )

    corrected = _state_track(state, track)
    if verbose:
        print(f"Barrier correction: {int(corrected.corrected.sum())} of {len(corrected)} points "
              f"moved or inserted")
    return corrected


def _state_track(state: dict, original: Track) -> Track:
    return Track(
        times=state["times"],
        means=state["means"],
        covariances=state["covs"],
        observed=state["observed"],
        corrected=state["corrected"],
        deployment=original.deployment,
    )

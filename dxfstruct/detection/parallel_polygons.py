"""
Parallel-line polygon synthesis.

Beams and walls are drafted as two parallel rails. This module pairs such
rails into closed rectangles, cuts them at obstacles (columns, walls),
snaps their ends to nearby faces or grid lines, and joins collinear pieces.
"""

import math
import re
from typing import Iterable, List, Optional, Set, Tuple
from loguru import logger
import numpy as np

from dxfstruct.core.models import Bounds, DxfEntity, EntityType, Point2D
from dxfstruct.core.geometry import (
    OBB,
    distance_point_to_infinite_line,
    distance_point_to_segment,
    entity_bounds,
    entity_length,
    merge_intervals,
    rectangle_entity,
    round_half_up,
    subtract_intervals,
)


NOMINAL_BEAM_WIDTHS = {200, 250, 300, 350, 400, 500, 600}
STANDARD_WALL_THICKNESSES = [100, 120, 150, 180, 200, 240, 250, 300, 350, 370, 400, 500, 600]
FALLBACK_WALL_THICKNESSES = {100, 200, 240}

PARALLEL_COS = 0.98
MIN_LINE_LENGTH = 50.0
MIN_PAIR_LENGTH = 200.0
MIN_SEPARATION = 10.0
MIN_OVERLAP = 50.0
MIN_PIECE_LENGTH = 200.0
BLOCKER_LATERAL_OVERLAP = 10.0

_LABEL_WIDTH_PATTERNS = (
    re.compile(r"^.+\s+(\d+)[xX×*](\d+)"),
    re.compile(r"^(\d+)[xX×*](\d+)$"),
)


def parse_valid_widths(texts: Iterable[DxfEntity], minimum: int = 100, maximum: int = 2000) -> Set[int]:
    """
    Collect member widths mentioned in label text ("KL1 300x600" -> 300).

    Args:
        texts: Text entities
        minimum: Smallest plausible width (mm)
        maximum: Largest plausible width (mm)

    Returns:
        Set of widths in [minimum, maximum]
    """
    widths: Set[int] = set()
    for entity in texts:
        if not entity.text:
            continue
        first_line = entity.text.strip().splitlines()[0] if entity.text.strip() else ""
        for pattern in _LABEL_WIDTH_PATTERNS:
            match = pattern.match(first_line)
            if match:
                width = int(match.group(1))
                if minimum <= width <= maximum:
                    widths.add(width)
                break
    return widths


def _direction(line: DxfEntity) -> Tuple[float, float, float]:
    dx = line.end.x - line.start.x
    dy = line.end.y - line.start.y
    return dx, dy, math.hypot(dx, dy)


def _width_tolerance(mode: str) -> float:
    return 10.0 if mode == "WALL" else 5.0


def rail_offsets(l1: DxfEntity, l2: DxfEntity) -> Tuple[float, float]:
    """Signed perpendicular offsets of both ends of l2 from the line through l1."""
    dx, dy, length = _direction(l1)
    nx, ny = -dy / length, dx / length
    return tuple(
        (p.x - l1.start.x) * nx + (p.y - l1.start.y) * ny for p in (l2.start, l2.end)
    )


def _width_matches(gap: float, mode: str, valid_widths: Set[float]) -> bool:
    if mode == "WALL":
        if valid_widths:
            return any(abs(gap - w) <= _width_tolerance(mode) for w in valid_widths)
        return 100 <= gap <= 500

    widths = valid_widths or NOMINAL_BEAM_WIDTHS
    return any(abs(gap - w) <= _width_tolerance(mode) for w in widths)


def has_axis_between(l1: DxfEntity, axis_lines: List[DxfEntity], gap: float) -> bool:
    """
    Check that a grid line runs along the member (between or near its rails).

    Args:
        l1: Reference rail
        axis_lines: Axis LINE entities
        gap: Rail separation

    Returns:
        True if a parallel axis within gap + 200 overlaps the rail by more than 50
    """
    if not axis_lines:
        return False
    dx, dy, len1 = _direction(l1)
    if len1 == 0:
        return False
    ux, uy = dx / len1, dy / len1
    mid = Point2D(x=(l1.start.x + l1.end.x) / 2, y=(l1.start.y + l1.end.y) / 2)

    for axis in axis_lines:
        if axis.start is None or axis.end is None:
            continue
        ax, ay, len_a = _direction(axis)
        if len_a == 0:
            continue
        if abs((dx * ax + dy * ay) / (len1 * len_a)) < PARALLEL_COS:
            continue
        if distance_point_to_infinite_line(mid, axis.start, axis.end) > gap + 200:
            continue

        t_start = (axis.start.x - l1.start.x) * ux + (axis.start.y - l1.start.y) * uy
        t_end = (axis.end.x - l1.start.x) * ux + (axis.end.y - l1.start.y) * uy
        overlap = min(len1, max(t_start, t_end)) - max(0.0, min(t_start, t_end))
        if overlap > 50:
            return True
    return False


class _PairFrame:
    """Local (u, n) frame of a rail pair: u along l1, n towards l2."""

    def __init__(self, l1: DxfEntity, l2: DxfEntity, gap: float):
        dx, dy, length = _direction(l1)
        self.origin = l1.start
        self.u = (dx / length, dy / length)
        self.length = length

        t_b1 = self.t_of(l2.start)
        proj = Point2D(x=l1.start.x + self.u[0] * t_b1, y=l1.start.y + self.u[1] * t_b1)
        self.v_perp = (l2.start.x - proj.x, l2.start.y - proj.y)
        self.gap = gap
        offset = math.hypot(*self.v_perp)
        self.n = (self.v_perp[0] / offset, self.v_perp[1] / offset) if offset > 0 else (-self.u[1], self.u[0])

    def t_of(self, p: Point2D) -> float:
        return (p.x - self.origin.x) * self.u[0] + (p.y - self.origin.y) * self.u[1]

    def n_of(self, p: Point2D) -> float:
        return (p.x - self.origin.x) * self.n[0] + (p.y - self.origin.y) * self.n[1]

    def at(self, t: float) -> Point2D:
        return Point2D(x=self.origin.x + self.u[0] * t, y=self.origin.y + self.u[1] * t)


def _obstacle_extents(frame: _PairFrame, obstacles: List[Bounds]) -> List[Tuple[float, float]]:
    """Projected [minU, maxU] of obstacles overlapping the member laterally."""
    blockers = []
    for bounds in obstacles:
        us = []
        vs = []
        for corner in bounds.corners():
            us.append(frame.t_of(corner))
            vs.append(frame.n_of(corner))
        lateral = min(max(vs), frame.gap) - max(min(vs), 0.0)
        if lateral > BLOCKER_LATERAL_OVERLAP:
            blockers.append((min(us), max(us)))
    return blockers


def _axis_crossings(frame: _PairFrame, axis_lines: List[DxfEntity]) -> List[float]:
    """Positions along u where perpendicular grid lines cross the member centreline."""
    crossings = []
    mid_n = frame.gap / 2
    for axis in axis_lines:
        if axis.start is None or axis.end is None:
            continue
        ax, ay, len_a = _direction(axis)
        if len_a == 0:
            continue
        if abs(ax / len_a * frame.u[0] + ay / len_a * frame.u[1]) > 0.1:
            continue
        t0, t1 = frame.t_of(axis.start), frame.t_of(axis.end)
        n0, n1 = frame.n_of(axis.start), frame.n_of(axis.end)
        if n0 == n1 or not (min(n0, n1) <= mid_n <= max(n0, n1)):
            continue
        crossings.append(t0 + (t1 - t0) * (mid_n - n0) / (n1 - n0))
    return crossings


def _snap_interval(start: float, end: float, blockers: List[Tuple[float, float]],
                   crossings: List[float], snap_distance: float) -> Tuple[float, float]:
    """Move piece ends onto an obstacle face, else a grid crossing, within snap_distance."""
    def snap(value: float, outward: int) -> float:
        faces = [hi if outward < 0 else lo for lo, hi in blockers]
        near_faces = [f for f in faces if 0 <= (f - value) * outward <= snap_distance]
        if near_faces:
            return min(near_faces, key=lambda f: abs(f - value))
        near_axes = [c for c in crossings if abs(c - value) <= snap_distance]
        if near_axes:
            return min(near_axes, key=lambda c: abs(c - value))
        return value

    return snap(start, -1), snap(end, 1)


def create_polygon_from_pair(
    l1: DxfEntity,
    l2: DxfEntity,
    layer: str,
    obstacles: List[Bounds],
    gap: float,
    axis_lines: Optional[List[DxfEntity]] = None,
    snap_distance: float = 0.0,
) -> List[DxfEntity]:
    """
    Build member rectangles for one rail pair.

    The span is the union of both rails' projections onto l1, minus the
    extents of obstacles that overlap the member laterally. Pieces shorter
    than 200 are dropped.

    Args:
        l1: Reference rail
        l2: Partner rail
        layer: Result layer
        obstacles: Obstacle bounds
        gap: Rail separation
        axis_lines: Grid lines used for end snapping
        snap_distance: Maximum end adjustment (0 disables snapping)

    Returns:
        Closed 4-vertex polylines (may be empty)
    """
    frame = _PairFrame(l1, l2, gap)
    t_b1 = frame.t_of(l2.start)
    t_b2 = frame.t_of(l2.end)

    overlap = min(frame.length, max(t_b1, t_b2)) - max(0.0, min(t_b1, t_b2))
    if overlap < MIN_OVERLAP:
        return []

    union_min = min(0.0, t_b1, t_b2)
    union_max = max(frame.length, t_b1, t_b2)

    blockers = merge_intervals(_obstacle_extents(frame, obstacles))
    crossings = _axis_crossings(frame, axis_lines) if axis_lines and snap_distance > 0 else []

    results = []
    for start_t, end_t in subtract_intervals(union_min, union_max, blockers):
        if end_t - start_t < MIN_PIECE_LENGTH:
            continue
        if snap_distance > 0:
            start_t, end_t = _snap_interval(start_t, end_t, blockers, crossings, snap_distance)

        c1 = frame.at(start_t)
        c2 = frame.at(end_t)
        c3 = c2.translated(*frame.v_perp)
        c4 = c1.translated(*frame.v_perp)
        results.append(rectangle_entity([c1, c2, c3, c4], layer))
    return results


def find_parallel_polygons(
    lines: List[DxfEntity],
    tolerance: float = 1200,
    result_layer: str = "CALC_LAYER",
    obstacles: Optional[List[DxfEntity]] = None,
    axis_lines: Optional[List[DxfEntity]] = None,
    text_entities: Optional[List[DxfEntity]] = None,
    mode: str = "BEAM",
    valid_widths: Optional[Set[float]] = None,
    snap_distance: float = 100.0,
) -> List[DxfEntity]:
    """
    Pair parallel rails into member rectangles.

    Lines are visited longest first; each line joins at most one accepted
    pair as the partner.

    Args:
        lines: Candidate entities (only LINEs are paired)
        tolerance: Maximum rail separation
        result_layer: Layer of the produced rectangles
        obstacles: Columns/walls that cut members
        axis_lines: Grid lines (required nearby in WALL mode, used for snapping)
        text_entities: Labels; used to derive widths when valid_widths is None
        mode: "BEAM" or "WALL"
        valid_widths: Accepted separations (empty = nominal set for the mode)
        snap_distance: End snapping distance

    Returns:
        List of closed LWPOLYLINE rectangles
    """
    if mode not in ("BEAM", "WALL"):
        raise ValueError(f"Unknown synthesis mode: {mode}")

    axis_lines = [a for a in (axis_lines or []) if a.type == EntityType.LINE]
    obstacle_bounds = [b for b in (entity_bounds(o) for o in (obstacles or [])) if b is not None]
    if valid_widths is None:
        valid_widths = parse_valid_widths(text_entities or [])
    widths = set(valid_widths)

    candidates = [
        (line, i, entity_length(line)) for i, line in enumerate(lines)
        if line.type == EntityType.LINE and line.start is not None and line.end is not None
    ]
    candidates.sort(key=lambda c: -c[2])

    polygons: List[DxfEntity] = []
    used: Set[int] = set()

    for idx_a, (l1, i, len1) in enumerate(candidates):
        if i in used:
            continue
        if len1 < MIN_LINE_LENGTH:
            continue
        dx1, dy1, _ = _direction(l1)

        for l2, j, len2 in candidates[idx_a + 1:]:
            if j in used:
                continue
            if min(len1, len2) < MIN_PAIR_LENGTH:
                continue

            dx2, dy2, _ = _direction(l2)
            if abs((dx1 * dx2 + dy1 * dy2) / (len1 * len2)) < PARALLEL_COS:
                continue

            mid2 = Point2D(x=(l2.start.x + l2.end.x) / 2, y=(l2.start.y + l2.end.y) / 2)
            gap = distance_point_to_segment(mid2, l1.start, l1.end)
            if gap > tolerance or gap < MIN_SEPARATION:
                continue

            off_start, off_end = rail_offsets(l1, l2)
            if abs(off_start - off_end) > _width_tolerance(mode):
                continue
            if min(abs(off_start), abs(off_end)) < MIN_SEPARATION or off_start * off_end < 0:
                continue

            if not _width_matches(gap, mode, widths):
                continue
            if mode == "WALL" and not has_axis_between(l1, axis_lines, gap):
                continue

            pieces = create_polygon_from_pair(
                l1, l2, result_layer, obstacle_bounds, gap, axis_lines, snap_distance
            )
            if pieces:
                polygons.extend(pieces)
                used.add(j)
        used.add(i)

    logger.debug(f"Synthesized {len(polygons)} {mode.lower()} polygons from {len(candidates)} lines")
    return polygons


def _gap_blocked(p_start: Point2D, p_end: Point2D, width: float, obstacles: List[Bounds]) -> bool:
    half = width / 2
    gap_box = Bounds(
        min_x=min(p_start.x, p_end.x) - 5 - half,
        min_y=min(p_start.y, p_end.y) - 5 - half,
        max_x=max(p_start.x, p_end.x) + 5 + half,
        max_y=max(p_start.y, p_end.y) + 5 + half,
    )
    return any(gap_box.overlaps(b) for b in obstacles)


def _gap_crossed(p_start: Point2D, p_end: Point2D, u: Tuple[float, float], others: List[OBB]) -> bool:
    mid = Point2D(x=(p_start.x + p_end.x) / 2, y=(p_start.y + p_end.y) / 2)
    for other in others:
        if abs(u[0] * other.u[0] + u[1] * other.u[1]) > 0.1:
            continue
        du, dv = other.project(mid)
        if abs(dv) <= other.half_width + 10 and abs(du) <= other.max_t + 10:
            return True
    return False


def merge_collinear_beams(
    polys: List[DxfEntity],
    obstacles: List[DxfEntity],
    all_beams: Optional[List[DxfEntity]] = None,
    max_gap: float = 2.0,
    strict_cross_only: bool = False,
) -> List[DxfEntity]:
    """
    Join collinear member rectangles separated by at most max_gap.

    Two boxes merge when they are parallel, lie within 50 of the same lane,
    differ in width by at most 100, and no obstacle sits in the gap. With
    strict_cross_only, gaps wider than 5 must also be crossed by a
    perpendicular beam from all_beams.

    Args:
        polys: Member rectangles
        obstacles: Entities that block a join
        all_beams: Beams checked for crossings in strict mode
        max_gap: Largest gap bridged
        strict_cross_only: Require a crossing beam in wide gaps

    Returns:
        New rectangles; each keeps the layer of its first piece
    """
    items = [(p, OBB.from_polygon(p)) for p in polys]
    items = [(p, o) for p, o in items if o is not None]

    obstacle_bounds = [b for b in (entity_bounds(o) for o in obstacles) if b is not None]
    crossing = [o for o in (OBB.from_polygon(b) for b in (all_beams or [])) if o is not None] \
        if strict_cross_only else []

    def lane_key(item):
        obb = item[1]
        vertical = abs(obb.u[1]) > abs(obb.u[0])
        lane = obb.center.x if vertical else obb.center.y
        pos = obb.center.y if vertical else obb.center.x
        return round(lane / 50), pos

    items.sort(key=lane_key)

    merged: List[DxfEntity] = []
    used: Set[int] = set()
    for i, (poly, obb) in enumerate(items):
        if i in used:
            continue
        used.add(i)
        current = obb

        merged_something = True
        while merged_something:
            merged_something = False
            for j in range(i + 1, len(items)):
                if j in used:
                    continue
                nxt = items[j][1]

                if abs(current.u[0] * nxt.u[0] + current.u[1] * nxt.u[1]) < PARALLEL_COS:
                    continue
                along, perp = current.project(nxt.center)
                if abs(perp) > 50:
                    continue
                next_start = along + nxt.min_t
                gap = next_start - current.max_t
                if gap > max_gap + 10:
                    continue
                if abs(current.half_width - nxt.half_width) * 2 > 100:
                    continue

                p_end = current.point_at(current.max_t)
                p_next = current.point_at(next_start)
                if _gap_blocked(p_end, p_next, current.half_width * 2, obstacle_bounds):
                    continue
                if strict_cross_only and gap > 5 and not _gap_crossed(p_end, p_next, current.u, crossing):
                    continue

                current = current.merged_with(nxt)
                used.add(j)
                merged_something = True
                break

        merged.append(current.to_polygon(poly.layer))

    logger.debug(f"Collinear merge: {len(items)} -> {len(merged)} beams")
    return merged


def estimate_wall_thicknesses(lines: List[DxfEntity]) -> Set[int]:
    """
    Estimate common wall thicknesses from rail separations.

    Pairwise separations of parallel lines in (50, 800) are bucketed to the
    nearest 10. A bucket is kept when it occurs more than twice and is close
    to a standard thickness, or occurs more than ten times. Above 2000 lines
    only every second line is sampled.

    Args:
        lines: Wall LINE entities

    Returns:
        Set of thicknesses (falls back to {100, 200, 240})
    """
    usable = [l for l in lines if l.start is not None and l.end is not None]
    sample = usable[::2] if len(usable) > 2000 else usable
    if len(sample) < 2:
        return set(FALLBACK_WALL_THICKNESSES)

    starts = np.array([[l.start.x, l.start.y] for l in sample])
    ends = np.array([[l.end.x, l.end.y] for l in sample])
    vectors = ends - starts
    lengths = np.hypot(vectors[:, 0], vectors[:, 1])
    mids = (starts + ends) / 2

    counts = {}
    for i in range(len(sample) - 1):
        if lengths[i] < 100:
            continue
        rest = slice(i + 1, None)
        with np.errstate(divide="ignore", invalid="ignore"):
            dots = (vectors[rest] @ vectors[i]) / (lengths[rest] * lengths[i])
        parallel = np.nonzero(np.abs(np.nan_to_num(dots)) >= PARALLEL_COS)[0] + i + 1

        for j in parallel:
            mid = Point2D(x=float(mids[j][0]), y=float(mids[j][1]))
            dist = distance_point_to_segment(mid, sample[i].start, sample[i].end)
            if 50 < dist < 800:
                bucket = round_half_up(dist / 10) * 10
                counts[bucket] = counts.get(bucket, 0) + 1

    result = set()
    for thickness, count in counts.items():
        if count <= 2:
            continue
        standard = any(abs(std - thickness) <= 5 for std in STANDARD_WALL_THICKNESSES)
        if standard or count > 10:
            result.add(thickness)

    if not result:
        logger.debug("No dominant wall thickness found, using fallback set")
        return set(FALLBACK_WALL_THICKNESSES)

    logger.debug(f"Estimated wall thicknesses: {sorted(result)}")
    return result

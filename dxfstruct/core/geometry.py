"""
Planar geometry helpers shared by detection and pipeline stages.
"""

import math
from typing import List, Optional, Tuple

from dxfstruct.core.models import Bounds, DxfEntity, EntityType, Point2D, TEXT_TYPES


def distance(p1: Point2D, p2: Point2D) -> float:
    return math.hypot(p2.x - p1.x, p2.y - p1.y)


def distance_point_to_segment(p: Point2D, start: Point2D, end: Point2D) -> float:
    """Distance from a point to a finite segment (clamped projection)."""
    dx = end.x - start.x
    dy = end.y - start.y
    len_sq = dx * dx + dy * dy
    if len_sq == 0:
        return distance(p, start)

    t = ((p.x - start.x) * dx + (p.y - start.y) * dy) / len_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(p.x - (start.x + t * dx), p.y - (start.y + t * dy))


def distance_point_to_infinite_line(p: Point2D, start: Point2D, end: Point2D) -> float:
    """Perpendicular distance from a point to the line through start and end."""
    a = start.y - end.y
    b = end.x - start.x
    denominator = math.hypot(a, b)
    if denominator == 0:
        return distance(p, start)
    c = -a * start.x - b * start.y
    return abs(a * p.x + b * p.y + c) / denominator


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def normalize_angle(deg: float) -> float:
    """Map an angle in degrees to [0, 360)."""
    a = deg % 360.0
    if a < 0:
        a += 360.0
    return a


def is_horizontal_angle(deg: float, tolerance: float = 15.0) -> bool:
    a = normalize_angle(deg) % 180.0
    return a <= tolerance or a >= 180.0 - tolerance


def is_vertical_angle(deg: float, tolerance: float = 15.0) -> bool:
    a = normalize_angle(deg) % 180.0
    return abs(a - 90.0) <= tolerance


def text_rotation(entity: DxfEntity) -> float:
    if entity.rotation is not None:
        return entity.rotation
    return entity.start_angle or 0.0


def entity_bounds(entity: DxfEntity) -> Optional[Bounds]:
    """
    Axis-aligned bounds of an entity in its own coordinate space.

    Text extents are estimated from glyph height (width = chars x 0.6 x h),
    assuming horizontal text.

    Returns:
        Bounds, or None for entities without usable geometry
    """
    points: List[Point2D] = []

    if entity.type == EntityType.LINE and entity.start and entity.end:
        points = [entity.start, entity.end]
    elif entity.type == EntityType.LWPOLYLINE and entity.vertices:
        points = list(entity.vertices)
    elif entity.type in (EntityType.CIRCLE, EntityType.ARC) and entity.center and entity.radius:
        r = entity.radius
        points = [entity.center.translated(-r, -r), entity.center.translated(r, r)]
    elif (entity.type in TEXT_TYPES or entity.type == EntityType.INSERT) and entity.start:
        points = [entity.start]
        if entity.type in TEXT_TYPES and entity.text and entity.height:
            h = entity.height
            w = len(entity.text) * h * 0.6
            points.append(entity.start.translated(w, h))
    elif entity.type == EntityType.DIMENSION:
        points = [p for p in (entity.measure_start, entity.measure_end, entity.end) if p is not None]

    return Bounds.from_points(points)


def entity_center(entity: DxfEntity) -> Optional[Point2D]:
    """Center of an entity: segment midpoint, else bounds center."""
    if entity.type == EntityType.LINE and entity.start and entity.end:
        return Point2D(x=(entity.start.x + entity.end.x) / 2, y=(entity.start.y + entity.end.y) / 2)

    bounds = entity_bounds(entity)
    if bounds:
        return bounds.center()

    return entity.center or entity.start


def entity_length(entity: DxfEntity) -> float:
    """Length of a LINE, open polyline path, or longest side of a closed polyline."""
    if entity.type == EntityType.LINE and entity.start and entity.end:
        return distance(entity.start, entity.end)

    if entity.type == EntityType.LWPOLYLINE and entity.vertices and len(entity.vertices) > 1:
        verts = entity.vertices
        if entity.closed:
            return max(distance(verts[i], verts[(i + 1) % len(verts)]) for i in range(len(verts)))
        return sum(distance(verts[i], verts[i + 1]) for i in range(len(verts) - 1))

    if entity.type == EntityType.CIRCLE and entity.radius:
        return 2 * math.pi * entity.radius

    if entity.type == EntityType.ARC and entity.radius is not None \
            and entity.start_angle is not None and entity.end_angle is not None:
        diff = entity.end_angle - entity.start_angle
        if diff < 0:
            diff += 360
        return math.radians(diff) * entity.radius

    return 0.0


def ray_intersects_aabb(origin: Point2D, direction: Tuple[float, float], box: Bounds) -> Tuple[float, float]:
    """
    Slab test of a ray against an axis-aligned box.

    Returns:
        (tmin, tmax) along the ray; tmin > tmax means no hit
    """
    dx, dy = direction
    tmin = -math.inf
    tmax = math.inf

    if abs(dx) > 1e-9:
        t1 = (box.min_x - origin.x) / dx
        t2 = (box.max_x - origin.x) / dx
        tmin = max(tmin, min(t1, t2))
        tmax = min(tmax, max(t1, t2))
    elif origin.x < box.min_x or origin.x > box.max_x:
        return math.inf, -math.inf

    if abs(dy) > 1e-9:
        t1 = (box.min_y - origin.y) / dy
        t2 = (box.max_y - origin.y) / dy
        tmin = max(tmin, min(t1, t2))
        tmax = min(tmax, max(t1, t2))
    elif origin.y < box.min_y or origin.y > box.max_y:
        return math.inf, -math.inf

    return tmin, tmax


def merge_intervals(intervals: List[Tuple[float, float]]) -> List[Tuple[float, float]]:
    """Union of overlapping 1D intervals, sorted by start."""
    if not intervals:
        return []
    ordered = sorted(intervals, key=lambda iv: iv[0])
    merged = [list(ordered[0])]
    for start, end in ordered[1:]:
        prev = merged[-1]
        if start < prev[1]:
            prev[1] = max(prev[1], end)
        else:
            merged.append([start, end])
    return [(a, b) for a, b in merged]


def subtract_intervals(start: float, end: float,
                       blockers: List[Tuple[float, float]]) -> List[Tuple[float, float]]:
    """Remove blocker intervals from [start, end]."""
    result = [(start, end)]
    for b_start, b_end in blockers:
        next_result = []
        for r_start, r_end in result:
            if b_end <= r_start or b_start >= r_end:
                next_result.append((r_start, r_end))
            elif b_start <= r_start and b_end >= r_end:
                continue
            elif b_start > r_start and b_end < r_end:
                next_result.append((r_start, b_start))
                next_result.append((b_end, r_end))
            elif b_start <= r_start:
                next_result.append((b_end, r_end))
            else:
                next_result.append((r_start, b_start))
        result = next_result
    return result


def translate_entity(entity: DxfEntity, dx: float, dy: float) -> DxfEntity:
    """Copy of an entity moved by (dx, dy)."""
    update = {}
    for field in ("start", "end", "center", "measure_start", "measure_end"):
        point = getattr(entity, field)
        if point is not None:
            update[field] = point.translated(dx, dy)
    if entity.vertices:
        update["vertices"] = [v.translated(dx, dy) for v in entity.vertices]
    return entity.model_copy(update=update)


def segments_of(entity: DxfEntity) -> List[Tuple[Point2D, Point2D]]:
    """Straight segments of a LINE or open/closed polyline path."""
    if entity.type == EntityType.LINE and entity.start and entity.end:
        return [(entity.start, entity.end)]
    if entity.type == EntityType.LWPOLYLINE and entity.vertices and len(entity.vertices) > 1:
        return list(zip(entity.vertices[:-1], entity.vertices[1:]))
    return []


def rectangle_entity(corners: List[Point2D], layer: str) -> DxfEntity:
    return DxfEntity(type=EntityType.LWPOLYLINE, layer=layer, closed=True, vertices=corners)


def bounds_rectangle(bounds: Bounds, layer: str) -> DxfEntity:
    return rectangle_entity(bounds.corners(), layer)


class OBB:
    """
    Oriented bounding box of a 4-vertex member rectangle.

    ``u`` is the unit longitudinal axis (normalised to point east, or south
    for vertical members), ``v`` the transverse axis. ``min_t``/``max_t``
    are the projected extents along ``u`` measured from ``center``.
    """

    def __init__(self, center: Point2D, u: Tuple[float, float], v: Tuple[float, float],
                 half_len: float, half_width: float, min_t: float, max_t: float,
                 entity: Optional[DxfEntity] = None):
        self.center = center
        self.u = u
        self.v = v
        self.half_len = half_len
        self.half_width = half_width
        self.min_t = min_t
        self.max_t = max_t
        self.entity = entity

    @classmethod
    def from_polygon(cls, poly: DxfEntity) -> Optional["OBB"]:
        """Build from vertices 0, 1 and 3 of a rectangle (None when degenerate)."""
        verts = poly.vertices or []
        if len(verts) < 4:
            return None
        center = entity_center(poly)
        if center is None:
            return None

        p0, p1, p3 = verts[0], verts[1], verts[3]
        v01 = (p1.x - p0.x, p1.y - p0.y)
        v03 = (p3.x - p0.x, p3.y - p0.y)
        len01 = math.hypot(*v01)
        len03 = math.hypot(*v03)
        if len01 == 0 or len03 == 0:
            return None

        if len01 > len03:
            u = (v01[0] / len01, v01[1] / len01)
            v = (v03[0] / len03, v03[1] / len03)
            length, width = len01, len03
        else:
            u = (v03[0] / len03, v03[1] / len03)
            v = (v01[0] / len01, v01[1] / len01)
            length, width = len03, len01

        if u[0] < -0.001 or (abs(u[0]) < 0.001 and u[1] < -0.001):
            u = (-u[0], -u[1])
            v = (-v[0], -v[1])

        ts = [(p.x - center.x) * u[0] + (p.y - center.y) * u[1] for p in verts]
        return cls(center, u, v, length / 2, width / 2, min(ts), max(ts), poly)

    def is_horizontal(self) -> bool:
        return abs(self.u[0]) >= abs(self.u[1])

    def angle(self) -> float:
        """Direction of the longitudinal axis in degrees."""
        return math.degrees(math.atan2(self.u[1], self.u[0]))

    def project(self, p: Point2D) -> Tuple[float, float]:
        """Coordinates of a point in the (u, v) frame centred on the box."""
        dx = p.x - self.center.x
        dy = p.y - self.center.y
        return dx * self.u[0] + dy * self.u[1], dx * self.v[0] + dy * self.v[1]

    def point_at(self, t: float, offset: float = 0.0) -> Point2D:
        return Point2D(
            x=self.center.x + self.u[0] * t + self.v[0] * offset,
            y=self.center.y + self.u[1] * t + self.v[1] * offset,
        )

    def contains(self, p: Point2D, tolerance: float = 0.0) -> bool:
        du, dv = self.project(p)
        return abs(du) <= self.half_len + tolerance and abs(dv) <= self.half_width + tolerance

    def merged_with(self, other: "OBB") -> "OBB":
        """Extent union of two parallel boxes, expressed in this box's frame."""
        rel = (other.center.x - self.center.x) * self.u[0] + (other.center.y - self.center.y) * self.u[1]
        new_min = min(self.min_t, rel + other.min_t)
        new_max = max(self.max_t, rel + other.max_t)
        new_len = new_max - new_min
        center = self.point_at(new_min + new_len / 2)
        return OBB(center, self.u, self.v, new_len / 2, max(self.half_width, other.half_width),
                   -new_len / 2, new_len / 2, self.entity)

    def to_polygon(self, layer: str, min_t: Optional[float] = None,
                   max_t: Optional[float] = None) -> DxfEntity:
        """Rectangle spanning [min_t, max_t] along u."""
        lo = self.min_t if min_t is None else min_t
        hi = self.max_t if max_t is None else max_t
        hw = self.half_width
        return rectangle_entity([
            self.point_at(lo, hw),
            self.point_at(lo, -hw),
            self.point_at(hi, -hw),
            self.point_at(hi, hw),
        ], layer)

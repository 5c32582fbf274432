"""
Column and wall detection.

Columns are taken as drawn (closed outlines, circles, block references).
Walls are synthesized from parallel rails in WALL mode and decomposed into
axis-aligned rectangles so each piece has a single thickness.
"""

from typing import List, Optional
from loguru import logger
import numpy as np

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady, stage_guard
from dxfstruct.core.geometry import OBB, entity_bounds, rectangle_entity
from dxfstruct.core.models import (
    ColumnInfo,
    DxfEntity,
    EntityType,
    Point2D,
    ProjectState,
    SemanticLayer,
    WallInfo,
)
from dxfstruct.core.results import ColumnResult, WallResult
from dxfstruct.detection.parallel_polygons import estimate_wall_thicknesses, find_parallel_polygons
from dxfstruct.parsers.block_flattener import explode_polyline_segments
from dxfstruct.pipeline.project import (
    extract_layers,
    extract_role,
    filter_entities_in_bounds,
    get_merge_base_bounds,
)


COLUMN_LAYER = "COLU_CALC"
WALL_LAYER = "WALL_CALC"


def _restriction_note(base_bounds) -> str:
    if base_bounds:
        return f" (Restricted to {len(base_bounds)} merged regions)"
    return ""


@stage_guard("COLUMNS")
def calculate_columns(project: ProjectState, config: Optional[Config] = None) -> ColumnResult:
    """
    Mark column outlines inside the base views.

    Args:
        project: Project with COLUMN layers configured
        config: Threshold source (defaults to the packaged config)

    Returns:
        ColumnResult with copies on COLU_CALC and COL-n infos
    """
    config = config or get_default_config()
    logger.info(f"Detecting columns in {project.name}")

    layers = project.layer_config.get(SemanticLayer.COLUMN)
    if not layers:
        raise StageNotReady("COLUMNS", "No COLUMN layers configured")

    margin = config.get_classification_rule("verticals", "base_margin_mm", 2500)
    base_bounds = get_merge_base_bounds(project, margin)
    raw = filter_entities_in_bounds(extract_layers(project, layers), base_bounds)

    entities = [
        e.with_layer(COLUMN_LAYER) for e in raw
        if (e.type == EntityType.LWPOLYLINE and e.closed)
        or e.type in (EntityType.CIRCLE, EntityType.INSERT)
    ]
    if not entities:
        raise StageNotReady("COLUMNS", "No column outlines found in COLUMN layers")

    infos = []
    for idx, e in enumerate(entities):
        b = entity_bounds(e)
        if b is None:
            continue
        infos.append(ColumnInfo(
            id=f"COL-{idx + 1}",
            layer=e.layer,
            bounds=b,
            width=b.width(),
            height=b.height(),
            center=b.center(),
        ))

    logger.success(f"Marked {len(entities)} columns")
    return ColumnResult(
        stage="COLUMNS",
        result_layers=[COLUMN_LAYER],
        entities=entities,
        infos=infos,
        context_layers=["AXIS", WALL_LAYER],
        filled_layers=[COLUMN_LAYER],
        message=f"Marked {len(entities)} columns." + _restriction_note(base_bounds),
    )


def point_in_polygon(pt: Point2D, vertices: List[Point2D]) -> bool:
    """Even-odd ray casting test."""
    inside = False
    j = len(vertices) - 1
    for i in range(len(vertices)):
        xi, yi = vertices[i].x, vertices[i].y
        xj, yj = vertices[j].x, vertices[j].y
        if (yi > pt.y) != (yj > pt.y) and pt.x < (xj - xi) * (pt.y - yi) / (yj - yi + 1e-9) + xi:
            inside = not inside
        j = i
    return inside


def _is_orthogonal(vertices: List[Point2D], tolerance: float = 1e-6) -> bool:
    n = len(vertices)
    for i in range(n):
        a = vertices[i]
        b = vertices[(i + 1) % n]
        if abs(a.x - b.x) > tolerance and abs(a.y - b.y) > tolerance:
            return False
    return True


def _box(x1: float, x2: float, y1: float, y2: float, layer: str) -> DxfEntity:
    x1, x2, y1, y2 = float(x1), float(x2), float(y1), float(y2)
    return rectangle_entity([
        Point2D(x=x1, y=y1), Point2D(x=x2, y=y1),
        Point2D(x=x2, y=y2), Point2D(x=x1, y=y2),
    ], layer)


def split_polygon_to_rectangles(poly: DxfEntity, layer: str) -> List[DxfEntity]:
    """
    Decompose an orthogonal polygon into axis-aligned rectangles.

    The polygon's distinct x and y coordinates form a grid; filled cells
    are swept row by row and identical column runs are stacked into one
    rectangle.

    Args:
        poly: Closed orthogonal polyline
        layer: Layer of the produced rectangles

    Returns:
        Rectangles (empty for non-orthogonal or degenerate input)
    """
    verts = poly.vertices or []
    if len(verts) < 4 or not _is_orthogonal(verts):
        return []

    xs = np.unique(np.array([v.x for v in verts]))
    ys = np.unique(np.array([v.y for v in verts]))
    if len(xs) < 2 or len(ys) < 2:
        return []

    rectangles = []
    active = {}
    for row in range(len(ys) - 1):
        runs = []
        run_start = None
        for col in range(len(xs) - 1):
            mid = Point2D(x=(xs[col] + xs[col + 1]) / 2, y=(ys[row] + ys[row + 1]) / 2)
            filled = point_in_polygon(mid, verts)
            if filled and run_start is None:
                run_start = col
            elif not filled and run_start is not None:
                runs.append((run_start, col))
                run_start = None
        if run_start is not None:
            runs.append((run_start, len(xs) - 1))

        next_active = {}
        for run in runs:
            next_active[run] = active.get(run, row)
        for (x_start, x_end), y_start in active.items():
            if (x_start, x_end) not in next_active:
                rectangles.append(_box(xs[x_start], xs[x_end], ys[y_start], ys[row], layer))
        active = next_active

    for (x_start, x_end), y_start in active.items():
        rectangles.append(_box(xs[x_start], xs[x_end], ys[y_start], ys[-1], layer))

    return rectangles


def convert_walls_to_rectangles(entities: List[DxfEntity], layer: str) -> List[DxfEntity]:
    """Replace closed orthogonal outlines by their rectangle decomposition."""
    result = []
    for e in entities:
        if e.type == EntityType.LWPOLYLINE and e.closed and e.vertices and len(e.vertices) > 2:
            rects = split_polygon_to_rectangles(e, layer)
            result.extend(rects if rects else [e.with_layer(layer)])
        else:
            result.append(e)
    return result


@stage_guard("WALLS")
def calculate_walls(project: ProjectState, config: Optional[Config] = None) -> WallResult:
    """
    Synthesize wall rectangles from WALL-layer rails.

    Args:
        project: Project with WALL layers configured (columns optional)
        config: Threshold source (defaults to the packaged config)

    Returns:
        WallResult with rectangles on WALL_CALC and WALL-n infos
    """
    config = config or get_default_config()
    logger.info(f"Detecting walls in {project.name}")

    layers = project.layer_config.get(SemanticLayer.WALL)
    if not layers:
        raise StageNotReady("WALLS", "No WALL layers configured")

    margin = config.get_classification_rule("verticals", "base_margin_mm", 2500)
    tolerance = config.get_classification_rule("verticals", "wall_search_tolerance_mm", 600)
    fallback = config.get_geometry_default("fallback_wall_thicknesses_mm", [100, 200, 240])
    base_bounds = get_merge_base_bounds(project, margin)

    obstacles = extract_role(project, SemanticLayer.COLUMN) + extract_layers(project, [COLUMN_LAYER])
    obstacles = filter_entities_in_bounds(obstacles, base_bounds)

    axis_lines = []
    for e in extract_role(project, SemanticLayer.AXIS):
        if e.type in (EntityType.LINE, EntityType.LWPOLYLINE):
            axis_lines.extend(explode_polyline_segments(e))
    axis_lines = filter_entities_in_bounds(axis_lines, base_bounds)

    raw = filter_entities_in_bounds(extract_layers(project, layers), base_bounds)
    candidates = []
    existing = []
    for e in raw:
        if e.type == EntityType.LWPOLYLINE and e.closed and e.vertices and len(e.vertices) > 2:
            existing.append(e.with_layer(WALL_LAYER))
        elif e.type == EntityType.LINE and e.start and e.end:
            candidates.append(e)
        elif e.type == EntityType.LWPOLYLINE:
            candidates.extend(explode_polyline_segments(e))

    thicknesses = estimate_wall_thicknesses(candidates) or set(fallback)
    logger.debug(f"Wall thicknesses: {sorted(thicknesses)}")

    generated = find_parallel_polygons(
        candidates, tolerance, WALL_LAYER, obstacles, axis_lines, [], "WALL", thicknesses,
    )
    walls = convert_walls_to_rectangles(generated + existing, WALL_LAYER)
    if not walls:
        raise StageNotReady("WALLS", "No wall rails paired into rectangles")

    infos = []
    for idx, e in enumerate(walls):
        b = entity_bounds(e)
        if b is None:
            continue
        obb = OBB.from_polygon(e) if e.vertices and len(e.vertices) == 4 else None
        infos.append(WallInfo(
            id=f"WALL-{idx + 1}",
            layer=e.layer,
            bounds=b,
            thickness=2 * obb.half_width if obb is not None else min(b.width(), b.height()),
            center=b.center(),
        ))

    summary = ", ".join(str(t) for t in sorted(thicknesses))
    logger.success(f"Marked {len(walls)} wall rectangles (thicknesses: {summary})")
    return WallResult(
        stage="WALLS",
        result_layers=[WALL_LAYER],
        entities=walls,
        infos=infos,
        thicknesses=sorted(thicknesses),
        context_layers=["AXIS", COLUMN_LAYER],
        filled_layers=[WALL_LAYER],
        message=f"Marked {len(walls)} wall rectangles. (Thicknesses: {summary})" + _restriction_note(base_bounds),
    )

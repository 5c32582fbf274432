"""
Shared beam-stage machinery.

Source collection for the beam stages plus the geometric passes of step 2:
extension toward perpendicular beams, merging of overlapping duplicates and
junction detection.
"""

import math
from typing import Dict, List, Optional, Set, Tuple
from pydantic import Field
from loguru import logger

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady
from dxfstruct.core.geometry import OBB, entity_bounds, ray_intersects_aabb, rectangle_entity, round_half_up
from dxfstruct.core.models import (
    BeamIntersectionInfo,
    Bounds,
    DxfEntity,
    DxfModel,
    EntityType,
    Point2D,
    ProjectState,
    SemanticLayer,
)
from dxfstruct.detection.parallel_polygons import parse_valid_widths
from dxfstruct.parsers.block_flattener import explode_polyline_segments
from dxfstruct.pipeline.project import (
    extract_layers,
    filter_entities_in_bounds,
    find_entities_in_all_projects,
    get_merge_base_bounds,
    layer_regex,
)


STEP1_LAYER = "BEAM_STEP1_RAW"
STEP2_LAYER = "BEAM_STEP2_GEO"
INTERSECTION_LAYER = "BEAM_STEP2_INTER_SECTION"
STEP3_LAYER = "BEAM_STEP3_ATTR"
STEP3_DEBUG_LAYER = "BEAM_STEP3_TARGET_DEBUG"
STEP4_LAYER = "BEAM_STEP4_LOGIC"
STEP4_ERROR_LAYER = "BEAM_STEP4_ERRORS"

MERGED_LABEL_LAYERS = ("MERGE_LABEL_H", "MERGE_LABEL_V")
WALL_RESULT_LAYER = "WALL_CALC"
COLUMN_RESULT_LAYER = "COLU_CALC"

PERPENDICULAR_DOT = 0.1


class BeamSources(DxfModel):
    """Inputs shared by the beam stages, clipped to the base views."""
    base_bounds: Optional[List[Bounds]] = None
    lines: List[DxfEntity] = Field(default_factory=list)
    axis_lines: List[DxfEntity] = Field(default_factory=list)
    obstacles: List[DxfEntity] = Field(default_factory=list)
    text_pool: List[DxfEntity] = Field(default_factory=list)
    valid_widths: Set[int] = Field(default_factory=set)

    def obstacle_bounds(self) -> List[Bounds]:
        return [b for b in (entity_bounds(o) for o in self.obstacles) if b is not None]


def _as_lines(entities: List[DxfEntity]) -> List[DxfEntity]:
    lines = []
    for e in entities:
        if e.type == EntityType.LINE and e.start and e.end:
            lines.append(e)
        elif e.type == EntityType.LWPOLYLINE:
            lines.extend(explode_polyline_segments(e))
    return lines


def _obstacle_layer(
    project: ProjectState,
    other_projects: List[ProjectState],
    result_layer: str,
    role: SemanticLayer,
) -> List[DxfEntity]:
    """Computed result layer if present, else raw role layers, else other drawings' results."""
    if project.has_layer(result_layer):
        return extract_layers(project, [result_layer])

    entities = extract_layers(project, project.layer_config.get(role))
    if not entities and other_projects:
        entities = find_entities_in_all_projects(other_projects, layer_regex(result_layer))
        if entities:
            logger.debug(f"Borrowed {len(entities)} {result_layer} entities from other projects")
    return entities


def collect_beam_sources(
    project: ProjectState,
    other_projects: Optional[List[ProjectState]] = None,
    config: Optional[Config] = None,
    stage: str = "BEAM",
) -> BeamSources:
    """
    Gather beam rails, obstacles, label text and width hints.

    Args:
        project: Project that has been split into views
        other_projects: Drawings searched for walls/columns this one lacks
        config: Threshold source (defaults to the packaged config)
        stage: Stage name used in the not-ready reason

    Returns:
        BeamSources restricted to the base views (+margin)

    Raises:
        StageNotReady: No split regions or no BEAM layers configured
    """
    config = config or get_default_config()
    if not project.split_regions:
        raise StageNotReady(stage, 'Please run "Split Views" first')

    beam_layers = project.layer_config.get(SemanticLayer.BEAM)
    if not beam_layers:
        raise StageNotReady(stage, "No BEAM layers configured")

    others = [p for p in (other_projects or []) if p.guid != project.guid]
    margin = config.get_classification_rule("beam_raw", "base_margin_mm", 2500)
    base_bounds = get_merge_base_bounds(project, margin)

    lines = filter_entities_in_bounds(_as_lines(extract_layers(project, beam_layers)), base_bounds)

    text_layers = [l for l in project.data.layers if l in MERGED_LABEL_LAYERS]
    texts = [
        e for e in extract_layers(project, text_layers)
        if e.type == EntityType.TEXT and not e.layer.upper().startswith("Z_")
    ]
    text_pool = filter_entities_in_bounds(texts, base_bounds)

    axis_lines = filter_entities_in_bounds(
        _as_lines(extract_layers(project, project.layer_config.get(SemanticLayer.AXIS))), base_bounds,
    )

    walls = _obstacle_layer(project, others, WALL_RESULT_LAYER, SemanticLayer.WALL)
    columns = _obstacle_layer(project, others, COLUMN_RESULT_LAYER, SemanticLayer.COLUMN)
    obstacles = filter_entities_in_bounds(walls, base_bounds) + filter_entities_in_bounds(columns, base_bounds)

    min_width = config.get_classification_rule("beam_raw", "min_label_width_mm", 100)
    max_width = config.get_classification_rule("beam_raw", "max_label_width_mm", 2000)
    valid_widths = parse_valid_widths(text_pool, min_width, max_width)

    label_layers = project.layer_config.get(SemanticLayer.BEAM_LABEL)
    if label_layers:
        labels = [e for e in extract_layers(project, label_layers) if e.type == EntityType.TEXT]
        valid_widths |= parse_valid_widths(filter_entities_in_bounds(labels, base_bounds), min_width, max_width)

    logger.debug(
        f"Beam sources: {len(lines)} rails, {len(obstacles)} obstacles, "
        f"{len(text_pool)} labels, widths {sorted(valid_widths)}"
    )
    return BeamSources(
        base_bounds=base_bounds,
        lines=lines,
        axis_lines=axis_lines,
        obstacles=obstacles,
        text_pool=text_pool,
        valid_widths=valid_widths,
    )


def is_beam_fully_anchored(beam: DxfEntity, obstacle_bounds: List[Bounds], probe: float = 5.0) -> bool:
    """Both ends, probed just beyond the beam, lie inside an obstacle."""
    obb = OBB.from_polygon(beam)
    if obb is None:
        return False

    def blocked(p: Point2D) -> bool:
        return any(b.contains_point(p) for b in obstacle_bounds)

    return blocked(obb.point_at(obb.max_t + probe)) and blocked(obb.point_at(obb.min_t - probe))


def _safe_extension(
    obb: OBB,
    origins: List[Point2D],
    direction: Tuple[float, float],
    targets: List[OBB],
    blocker_bounds: List[Bounds],
    viewport: Optional[Bounds],
    max_search: float,
) -> float:
    viewport_limit = math.inf
    if viewport is not None:
        for origin in origins:
            _, tmax = ray_intersects_aabb(origin, direction, viewport)
            viewport_limit = min(viewport_limit, max(0.0, tmax)) if tmax > -1e-3 else 0.0

    barrier = viewport_limit
    for box in blocker_bounds:
        for origin in origins:
            tmin, tmax = ray_intersects_aabb(origin, direction, box)
            if tmin <= tmax and tmax > -1e-3:
                barrier = min(barrier, max(0.0, tmin))

    if barrier < 10:
        return 0.0

    search_limit = min(max_search, barrier)
    best = 0.0
    for target in targets:
        if target.entity is obb.entity:
            continue
        if abs(obb.u[0] * target.u[0] + obb.u[1] * target.u[1]) > PERPENDICULAR_DOT:
            continue
        box = entity_bounds(target.entity)
        if box is None:
            continue

        hit_max = -math.inf
        hits = 0
        for origin in origins:
            tmin, tmax = ray_intersects_aabb(origin, direction, box)
            if tmin <= tmax and tmax > 0 and tmin < search_limit:
                hit_max = max(hit_max, tmax)
                hits += 1

        if hits:
            if hit_max <= barrier + 10:
                best = max(best, min(hit_max, barrier))
            else:
                best = max(best, barrier)
    return best


def extend_beams_to_perpendicular(
    polys: List[DxfEntity],
    targets: List[DxfEntity],
    blockers: List[DxfEntity],
    max_search: float,
    viewports: List[Bounds],
) -> List[DxfEntity]:
    """
    Stretch beam ends onto the far face of perpendicular beams they point at.

    Rays are cast from three points of each end face (both corners and the
    middle). An end stops at the nearest blocker or the edge of the view
    that holds the beam's centre, and never grows beyond ``max_search``
    while looking for a target.

    Args:
        polys: Beams to extend
        targets: Beams that may be reached (perpendicular ones only count;
            an entity object shared with ``polys`` never targets itself)
        blockers: Walls and columns
        max_search: Largest gap bridged to reach a target
        viewports: View boxes limiting the extension

    Returns:
        New rectangles in input order; unchanged beams are returned as-is
    """
    blocker_bounds = [b for b in (entity_bounds(e) for e in blockers) if b is not None]
    target_obbs = [o for o in (OBB.from_polygon(t) for t in targets) if o is not None]

    result = []
    extended = 0
    for poly in polys:
        obb = OBB.from_polygon(poly)
        if obb is None:
            result.append(poly)
            continue

        hw = obb.half_width
        viewport = next((vp for vp in viewports if vp.contains_point(obb.center)), None)

        front = [obb.point_at(obb.max_t, hw), obb.point_at(obb.max_t), obb.point_at(obb.max_t, -hw)]
        back = [obb.point_at(obb.min_t, hw), obb.point_at(obb.min_t), obb.point_at(obb.min_t, -hw)]
        ext_front = _safe_extension(obb, front, obb.u, target_obbs, blocker_bounds, viewport, max_search)
        ext_back = _safe_extension(obb, back, (-obb.u[0], -obb.u[1]), target_obbs, blocker_bounds, viewport, max_search)

        if ext_front == 0 and ext_back == 0:
            result.append(poly)
            continue

        extended += 1
        result.append(obb.to_polygon(poly.layer, obb.min_t - ext_back, obb.max_t + ext_front))

    logger.debug(f"Extended {extended} of {len(polys)} beams toward perpendicular targets")
    return result


def merge_overlapping_beams(beams: List[DxfEntity]) -> List[DxfEntity]:
    """
    Fuse parallel beams that overlap into one rectangle.

    Two beams fuse when they are parallel, their centre lines are within
    the larger half width + 50 of each other and their bounds overlap.
    """
    items = [(b, OBB.from_polygon(b)) for b in beams]
    items = [(b, o) for b, o in items if o is not None]

    merged = []
    used: Set[int] = set()
    for i, (beam, obb) in enumerate(items):
        if i in used:
            continue
        used.add(i)
        current = obb

        changed = True
        while changed:
            changed = False
            for j in range(i + 1, len(items)):
                if j in used:
                    continue
                other = items[j][1]
                if abs(current.u[0] * other.u[0] + current.u[1] * other.u[1]) < 0.98:
                    continue
                _, perp = current.project(other.center)
                if abs(perp) > max(current.half_width, other.half_width) + 50:
                    continue
                box_a = entity_bounds(current.entity)
                box_b = entity_bounds(other.entity)
                if box_a is None or box_b is None or not box_a.overlaps(box_b):
                    continue
                current = current.merged_with(other)
                current.entity = current.to_polygon(beam.layer)
                used.add(j)
                changed = True

        merged.append(current.to_polygon(beam.layer))

    if len(merged) != len(beams):
        logger.debug(f"Merged overlapping beams: {len(beams)} -> {len(merged)}")
    return merged


def _overlap_box(a: Bounds, b: Bounds) -> Optional[Bounds]:
    min_x = max(a.min_x, b.min_x)
    max_x = min(a.max_x, b.max_x)
    min_y = max(a.min_y, b.min_y)
    max_y = min(a.max_y, b.max_y)
    if min_x < max_x - 10 and min_y < max_y - 10:
        return Bounds(min_x=min_x, min_y=min_y, max_x=max_x, max_y=max_y)
    return None


def _t_stem_angle(arms: Dict[str, bool]) -> float:
    """Stem direction of a T from its missing arm."""
    if not arms["down"]:
        return 0.0
    if not arms["left"]:
        return 90.0
    if not arms["up"]:
        return 180.0
    if not arms["right"]:
        return 270.0
    return 0.0


def detect_intersections(
    beams: List[DxfEntity],
    cell: float = 200,
    arm_tolerance: float = 150,
) -> Tuple[List[DxfEntity], List[BeamIntersectionInfo]]:
    """
    Find and classify crossings of perpendicular beams.

    Overlaps of each horizontal/vertical beam pair are bucketed on a
    ``cell`` grid; overlaps in one bucket form a single junction. A beam end
    reaching beyond the junction box (+arm_tolerance) contributes an arm in
    its direction: four arms make a C (cross), three a T, fewer an L.

    Args:
        beams: Beam rectangles
        cell: Bucket size for clustering overlap centres
        arm_tolerance: Distance an end must reach past the box to count

    Returns:
        (marker entities on BEAM_STEP2_INTER_SECTION, intersection infos)
    """
    obbs = [OBB.from_polygon(b) for b in beams]
    boxes = [entity_bounds(b) for b in beams]

    clusters: Dict[Tuple[int, int], Tuple[Bounds, Set[int]]] = {}
    for i in range(len(beams)):
        obb_a, box_a = obbs[i], boxes[i]
        if obb_a is None or box_a is None:
            continue
        for j in range(i + 1, len(beams)):
            obb_b, box_b = obbs[j], boxes[j]
            if obb_b is None or box_b is None:
                continue
            if obb_a.is_horizontal() == obb_b.is_horizontal():
                continue
            overlap = _overlap_box(box_a, box_b)
            if overlap is None:
                continue
            c = overlap.center()
            key = (round_half_up(c.x / cell), round_half_up(c.y / cell))
            if key in clusters:
                box, members = clusters[key]
                clusters[key] = (box.union(overlap), members | {i, j})
            else:
                clusters[key] = (overlap, {i, j})

    entities: List[DxfEntity] = []
    infos: List[BeamIntersectionInfo] = []
    for n, (box, members) in enumerate(clusters.values(), start=1):
        center = box.center()
        arms = {"right": False, "up": False, "left": False, "down": False}
        for idx in members:
            obb = obbs[idx]
            for end in (obb.point_at(obb.max_t), obb.point_at(obb.min_t)):
                dx = end.x - center.x
                dy = end.y - center.y
                if abs(dx) < box.width() / 2 + arm_tolerance and abs(dy) < box.height() / 2 + arm_tolerance:
                    continue
                if abs(dx) > abs(dy):
                    arms["right" if dx > 0 else "left"] = True
                else:
                    arms["up" if dy > 0 else "down"] = True

        count = sum(arms.values())
        junction = "C" if count == 4 else "T" if count == 3 else "L"
        angle = _t_stem_angle(arms) if junction == "T" else None

        text = f"T-{n}/{int(angle)}" if junction == "T" else f"{junction}-{n}"
        entities.append(rectangle_entity(box.corners(), INTERSECTION_LAYER))
        entities.append(DxfEntity(
            type=EntityType.TEXT, layer=INTERSECTION_LAYER,
            start=center, text=text, height=250, rotation=0.0,
        ))
        infos.append(BeamIntersectionInfo(
            id=f"INTER-{n}",
            layer=INTERSECTION_LAYER,
            vertices=box.corners(),
            bounds=box,
            center=center,
            angle=angle,
            junction=junction,
            beam_indexes=sorted(members),
        ))

    logger.debug(f"Detected {len(infos)} beam junctions")
    return entities, infos

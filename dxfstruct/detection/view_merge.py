"""
View registration and label merge.

Beam drawings often repeat the same grid several times on a sheet, each copy
carrying part of the annotations. Copies sharing a title prefix are aligned
onto the first one through their axis-grid crossings, and their labels are
collected on two merged layers split by beam direction.
"""

import math
import re
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple
from loguru import logger

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady, stage_guard
from dxfstruct.core.geometry import (
    distance_point_to_segment,
    entity_bounds,
    is_horizontal_angle,
    is_vertical_angle,
    normalize_angle,
    round_half_up,
    segments_of,
    text_rotation,
    translate_entity,
)
from dxfstruct.core.models import (
    BeamLabelInfo,
    Bounds,
    DxfEntity,
    EntityType,
    LayerConfig,
    MergedViewData,
    ParsedBeamLabel,
    Point2D,
    ProjectState,
    SemanticLayer,
    ViewMergeMapping,
    ViewportRegion,
)
from dxfstruct.core.results import MergeResult
from dxfstruct.pipeline.project import extract_layers, source_layers


MERGE_LAYER_H = "MERGE_LABEL_H"
MERGE_LAYER_V = "MERGE_LABEL_V"

Segment = Tuple[Point2D, Point2D]

_LABEL_RICH = re.compile(r"^([A-Z0-9\-]+)\(([^)]+)\)\s+(\d+)[xX*×](\d+)", re.IGNORECASE)
_LABEL_SIMPLE = re.compile(r"^([A-Z0-9\-]+)\s+(\d+)[xX*×](\d+)", re.IGNORECASE)
_LABEL_CODE_SPAN = re.compile(r"^([A-Z0-9\-]+)\(([^)]+)\)", re.IGNORECASE)
_LABEL_CODE = re.compile(r"^([A-Z0-9\-]+)$", re.IGNORECASE)
_CHINESE_LABEL_LAYER = re.compile(r"^Z[\u4e00-\u9fa5]")


def get_grid_intersections(box: Bounds, axis_lines: List[DxfEntity]) -> List[Point2D]:
    """
    Crossings of horizontal and vertical axis LINEs touching a box.

    A line is horizontal when it rises less than 10 over a longer run
    (vertical likewise). Crossings must fall within 100 of both segments.

    Args:
        box: View bounds
        axis_lines: Axis entities (non-LINEs are ignored)

    Returns:
        Crossing points (H-major order)
    """
    horizontal = []
    vertical = []
    for line in axis_lines:
        if line.type != EntityType.LINE or line.start is None or line.end is None:
            continue
        if max(line.start.x, line.end.x) < box.min_x or min(line.start.x, line.end.x) > box.max_x:
            continue
        if max(line.start.y, line.end.y) < box.min_y or min(line.start.y, line.end.y) > box.max_y:
            continue

        dx = abs(line.end.x - line.start.x)
        dy = abs(line.end.y - line.start.y)
        if dx > dy and dy < 10:
            horizontal.append(line)
        elif dy > dx and dx < 10:
            vertical.append(line)

    points = []
    for h in horizontal:
        hy = (h.start.y + h.end.y) / 2
        h_min, h_max = sorted((h.start.x, h.end.x))
        for v in vertical:
            vx = (v.start.x + v.end.x) / 2
            v_min, v_max = sorted((v.start.y, v.end.y))
            if h_min - 100 <= vx <= h_max + 100 and v_min - 100 <= hy <= v_max + 100:
                points.append(Point2D(x=vx, y=hy))
    return points


def calculate_merge_vector(base_points: List[Point2D], target_points: List[Point2D],
                           quantum: float = 50) -> Optional[Point2D]:
    """
    Offset of a secondary grid relative to the base grid.

    Every (target, base) pair votes for its difference, quantised to
    ``quantum``. The exact difference of the first pair in the winning
    bucket is returned, so ``target = base + vector`` and a secondary point
    maps into the base view as ``p - vector``.

    Args:
        base_points: Grid crossings of the base view
        target_points: Grid crossings of the secondary view
        quantum: Bucket size

    Returns:
        Offset, or None when either view has no crossings
    """
    if not base_points or not target_points:
        return None

    counts: Dict[Tuple[int, int], int] = {}
    first_diff: Dict[Tuple[int, int], Point2D] = {}
    best_key = None
    best_count = 0

    for t in target_points:
        for b in base_points:
            dx = t.x - b.x
            dy = t.y - b.y
            key = (round_half_up(round_half_up(dx) / quantum), round_half_up(round_half_up(dy) / quantum))
            counts[key] = counts.get(key, 0) + 1
            if key not in first_diff:
                first_diff[key] = Point2D(x=dx, y=dy)
            if counts[key] > best_count:
                best_count = counts[key]
                best_key = key

    return first_diff[best_key]


def is_beam_viewport_name(title: str) -> bool:
    return "梁" in title or "BEAM" in title.upper() or "X向" in title or "Y向" in title


def detect_name_orientation(layer: str) -> Optional[str]:
    """Orientation hinted by a layer name ("水平"/"HORIZONTAL"/"_H", "垂直"/"竖"/"VERT"/"_V")."""
    upper = layer.upper()
    if "水平" in layer or "HORIZONTAL" in upper or "_H" in upper:
        return "H"
    if "垂直" in layer or "竖" in layer or "VERT" in upper or "_V" in upper:
        return "V"
    return None


def _majority(h: int, v: int) -> Optional[str]:
    if h == 0 and v == 0:
        return None
    return "H" if h >= v else "V"


def detect_leader_orientation(segments: List[Segment], angle_tolerance: float = 15) -> Optional[str]:
    """
    Beam direction implied by leader lines.

    Leaders run across the beam they tag, so mostly vertical leaders mean
    horizontal beams and vice versa.
    """
    h = v = 0
    for start, end in segments:
        angle = math.degrees(math.atan2(end.y - start.y, end.x - start.x))
        if is_horizontal_angle(angle, angle_tolerance):
            v += 1
        elif is_vertical_angle(angle, angle_tolerance):
            h += 1
    return _majority(h, v)


def detect_text_orientation(texts: List[DxfEntity], angle_tolerance: float = 15) -> Optional[str]:
    """Majority text direction; horizontal text labels horizontal beams."""
    h = v = 0
    for t in texts:
        angle = text_rotation(t)
        if is_horizontal_angle(angle, angle_tolerance):
            h += 1
        elif is_vertical_angle(angle, angle_tolerance):
            v += 1
    return _majority(h, v)


def classify_label_orientation(
    layer: str,
    leader_segments: List[Segment],
    texts: List[DxfEntity],
    layer_config: Optional[LayerConfig] = None,
    angle_tolerance: float = 15,
) -> Optional[str]:
    """
    Decide whether a label layer annotates horizontal or vertical beams.

    Signals are tried in a fixed order and the first one available wins:
    explicit configuration, layer-name hint, leader geometry, text rotation.

    Args:
        layer: Label layer name
        leader_segments: Leader segments near the layer's texts
        texts: Text entities on the layer
        layer_config: Project layer configuration (orientation overrides)
        angle_tolerance: Degrees from axis still counted as aligned

    Returns:
        "H", "V", or None when no signal is available
    """
    if layer_config is not None and layer in layer_config.orientation:
        return layer_config.orientation[layer]

    hint = detect_name_orientation(layer)
    if hint:
        return hint

    leader = detect_leader_orientation(leader_segments, angle_tolerance)
    if leader:
        return leader

    return detect_text_orientation(texts, angle_tolerance)


def parse_beam_label(text: str) -> Optional[ParsedBeamLabel]:
    """
    Parse the first line of a beam annotation.

    Tiers, tried in order (case-insensitive; x, X, * or × between sizes):

    1. ``CODE(SPAN) WxH``  e.g. "KL1(2) 250x500"
    2. ``CODE WxH``        e.g. "KL1 300x500"
    3. ``CODE(SPAN)``      e.g. "KL1(2A)"
    4. ``CODE``            e.g. "L3"

    Args:
        text: Raw label text

    Returns:
        ParsedBeamLabel, or None when no tier matches
    """
    lines = (text or "").splitlines()
    first = lines[0].strip() if lines else ""

    match = _LABEL_RICH.match(first)
    if match:
        return ParsedBeamLabel(code=match.group(1), span=match.group(2),
                               width=int(match.group(3)), height=int(match.group(4)))

    match = _LABEL_SIMPLE.match(first)
    if match:
        return ParsedBeamLabel(code=match.group(1), width=int(match.group(2)), height=int(match.group(3)))

    match = _LABEL_CODE_SPAN.match(first)
    if match:
        return ParsedBeamLabel(code=match.group(1), span=match.group(2))

    match = _LABEL_CODE.match(first)
    if match:
        return ParsedBeamLabel(code=match.group(1))

    return None


def _text_threshold(text: DxfEntity, proximity: float) -> float:
    return (text.height or 300) * 2 + proximity


def collect_leader_segments(layer_entities: List[DxfEntity], texts: List[DxfEntity],
                            proximity: float = 1200) -> List[Segment]:
    """Segments of a label layer that sit near its texts (all segments if none do)."""
    segments = [seg for e in layer_entities for seg in segments_of(e)]
    if not segments or not texts:
        return segments

    near = []
    for t in texts:
        if t.start is None:
            continue
        threshold = _text_threshold(t, proximity)
        near.extend(seg for seg in segments if distance_point_to_segment(t.start, *seg) <= threshold)
    return near or segments


def _looks_like_label_layer(layer: str, layer_config: LayerConfig) -> bool:
    configured = layer_config.get(SemanticLayer.BEAM_LABEL)
    if configured:
        return layer in configured

    upper = layer.upper()
    if "AXIS" in upper or "中心线" in layer:
        return False
    if layer in layer_config.get(SemanticLayer.BEAM_IN_SITU_LABEL):
        return False
    if "原位" in layer or "IN-SITU" in upper or "IN_SITU" in upper:
        return False
    return ("标注" in layer or "DIM" in upper or "LABEL" in upper
            or bool(_CHINESE_LABEL_LAYER.match(layer)))


def _should_include(entity: DxfEntity, expanded: Bounds) -> bool:
    if entity.start and expanded.contains_point(entity.start):
        return True
    if entity.type == EntityType.DIMENSION:
        for p in (entity.measure_start, entity.measure_end, entity.end):
            if p and expanded.contains_point(p):
                return True
    bounds = entity_bounds(entity)
    if bounds and (expanded.contains_point(bounds.center()) or bounds.overlaps(expanded)):
        return True
    return False


def build_beam_label_infos(
    merged_by_layer: Dict[str, List[DxfEntity]],
    proximity: float = 1200,
    angle_tolerance: float = 15,
) -> List[BeamLabelInfo]:
    """
    Pair each merged label text with its leader and parse it.

    Labels without dimensions take them from the first label with the same
    code that has both; labels with no such donor are flagged for review.

    Args:
        merged_by_layer: Merged entities keyed by MERGE_LABEL_H / MERGE_LABEL_V
        proximity: Extra leader search distance beyond twice the text height
        angle_tolerance: Degrees from vertical at which text counts as vertical

    Returns:
        BeamLabelInfo list, H layer first
    """
    infos: List[BeamLabelInfo] = []

    for layer in (MERGE_LAYER_H, MERGE_LAYER_V):
        entities = merged_by_layer.get(layer, [])
        texts = [e for e in entities if e.is_text() and e.start is not None]
        segments = [seg for e in entities for seg in segments_of(e)]

        for idx, txt in enumerate(texts):
            rotation = text_rotation(txt)
            vertical = is_vertical_angle(rotation, angle_tolerance)
            base = txt.end if vertical and txt.end is not None else txt.start

            best = None
            best_dist = math.inf
            for seg in segments:
                d = distance_point_to_segment(base, *seg)
                if d < best_dist:
                    best_dist = d
                    best = seg

            leader_start = leader_end = None
            orientation = normalize_angle(rotation)
            if best is not None and best_dist <= _text_threshold(txt, proximity):
                leader_start, leader_end = best
                if base.distance_to(leader_end) < base.distance_to(leader_start):
                    leader_start, leader_end = leader_end, leader_start
                orientation = math.degrees(math.atan2(
                    leader_end.y - leader_start.y, leader_end.x - leader_start.x
                ))

            infos.append(BeamLabelInfo(
                id=f"{layer}-{idx}",
                source_layer=layer,
                orientation=orientation,
                text_raw=txt.text or "",
                text_insert=txt.start,
                leader_start=leader_start,
                leader_end=leader_end,
                parsed=parse_beam_label(txt.text or ""),
            ))

    donors: Dict[str, ParsedBeamLabel] = {}
    for info in infos:
        if info.parsed and info.parsed.has_dimensions() and info.parsed.code not in donors:
            donors[info.parsed.code] = info.parsed

    result = []
    needs_manual = []
    for info in infos:
        parsed = info.parsed
        if parsed is None or parsed.has_dimensions():
            result.append(info)
            continue
        donor = donors.get(parsed.code)
        if donor is not None:
            filled = parsed.model_copy(update={"width": donor.width, "height": donor.height})
            result.append(info.model_copy(update={"parsed": filled}))
        else:
            needs_manual.append(info.id)
            result.append(info.model_copy(update={"needs_review": True}))

    if needs_manual:
        logger.warning(
            f"Beam labels missing dimensions; please confirm manually: {', '.join(needs_manual)}"
        )
    return result


def _group_beam_views(regions: List[ViewportRegion]) -> "OrderedDict[str, List[int]]":
    groups: "OrderedDict[str, List[int]]" = OrderedDict()
    for i, region in enumerate(regions):
        if not is_beam_viewport_name(region.title or ""):
            continue
        key = region.info.prefix if region.info else region.title
        groups.setdefault(key, []).append(i)
    return groups


@stage_guard("MERGE")
def calculate_merge_views(project: ProjectState, config: Optional[Config] = None) -> MergeResult:
    """
    Merge the labels of repeated beam views onto their base view.

    Args:
        project: Project with split regions
        config: Threshold source (defaults to the packaged config)

    Returns:
        MergeResult with entities on MERGE_LABEL_H / MERGE_LABEL_V, label
        infos and per-view mappings; None when there is nothing to merge
    """
    config = config or get_default_config()
    logger.info(f"Merging beam views of {project.name}")

    regions = project.split_regions
    if not regions:
        raise StageNotReady("MERGE", "No split regions; run view split first")

    groups = _group_beam_views(regions)
    if not groups:
        raise StageNotReady("MERGE", "No beam views found (titles with 梁/BEAM/X向/Y向)")

    margin = config.get_classification_rule("view_merge", "label_margin_mm", 2000)
    angle_tol = config.get_classification_rule("view_merge", "angle_tolerance_deg", 15)
    proximity = config.get_classification_rule("view_merge", "leader_proximity_mm", 1200)
    quantum = config.get_classification_rule("view_merge", "vector_quantum_mm", 50)

    axis_lines = [
        e for e in extract_layers(project, project.layer_config.get(SemanticLayer.AXIS))
        if e.type in (EntityType.LINE, EntityType.LWPOLYLINE)
    ]
    if not axis_lines and any(len(members) > 1 for members in groups.values()):
        raise StageNotReady("MERGE", "No AXIS layers configured")
    all_entities = extract_layers(project, source_layers(project))

    by_layer: Dict[str, List[DxfEntity]] = {}
    for e in all_entities:
        by_layer.setdefault(e.layer, []).append(e)

    targets: Dict[str, str] = {}
    for layer, entities in by_layer.items():
        if not _looks_like_label_layer(layer, project.layer_config):
            continue
        texts = [e for e in entities if e.is_text() and e.start is not None]
        leaders = collect_leader_segments(entities, texts, proximity)
        orientation = classify_label_orientation(layer, leaders, texts, project.layer_config, angle_tol)
        if orientation:
            targets[layer] = MERGE_LAYER_H if orientation == "H" else MERGE_LAYER_V
    logger.debug(f"Label layers: {targets}")

    label_entities = [e for e in all_entities if e.layer in targets]

    merged_by_layer: Dict[str, List[DxfEntity]] = {MERGE_LAYER_H: [], MERGE_LAYER_V: []}
    mappings: List[ViewMergeMapping] = []

    for key, members in groups.items():
        members.sort(key=lambda i: regions[i].info.index if regions[i].info else 1)
        base_idx = members[0]
        base = regions[base_idx]

        expanded = base.bounds.expand(margin)
        for e in label_entities:
            if _should_include(e, expanded):
                merged_by_layer[targets[e.layer]].append(e.with_layer(targets[e.layer]))
        mappings.append(ViewMergeMapping(
            source_region_index=base_idx, target_region_index=base_idx,
            vector=Point2D(x=0.0, y=0.0), bounds=base.bounds, title=base.title,
        ))

        if len(members) == 1:
            continue

        base_points = get_grid_intersections(base.bounds, axis_lines)
        for idx in members[1:]:
            view = regions[idx]
            vector = calculate_merge_vector(base_points, get_grid_intersections(view.bounds, axis_lines), quantum)
            if vector is None:
                logger.warning(f"No grid correspondence for view '{view.title}'; skipped")
                continue

            expanded = view.bounds.expand(margin)
            for e in label_entities:
                if _should_include(e, expanded):
                    moved = translate_entity(e, -vector.x, -vector.y)
                    merged_by_layer[targets[e.layer]].append(moved.with_layer(targets[e.layer]))
            mappings.append(ViewMergeMapping(
                source_region_index=idx, target_region_index=base_idx,
                vector=vector, bounds=view.bounds, title=view.title,
            ))
            logger.debug(f"Registered '{view.title}' onto '{base.title}' by ({vector.x:.1f}, {vector.y:.1f})")

    entities = merged_by_layer[MERGE_LAYER_H] + merged_by_layer[MERGE_LAYER_V]
    if not entities:
        raise StageNotReady("MERGE", "No label entities found to merge")

    labels = build_beam_label_infos(merged_by_layer, proximity, angle_tol)
    flagged = sum(1 for l in labels if l.needs_review)

    logger.success(
        f"Merged {len(entities)} label entities from {len(mappings)} views "
        f"({len(labels)} labels, {flagged} need review)"
    )
    return MergeResult(
        stage="MERGE",
        result_layers=[MERGE_LAYER_H, MERGE_LAYER_V],
        entities=entities,
        labels=labels,
        merged_view_data=MergedViewData(mappings=mappings),
        message=f"Merged {len(mappings)} views into {len(groups)} groups",
    )

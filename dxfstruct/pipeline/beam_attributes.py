"""
Beam step 3: attribute mounting.

Attaches the merged beam labels (code, span, width x height) to the step-2
beams and spreads them along continuous beam lines.
"""

import math
from typing import Dict, List, Optional, Tuple
from loguru import logger

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady, stage_guard
from dxfstruct.core.geometry import OBB, entity_bounds
from dxfstruct.core.models import (
    BeamLabelInfo,
    BeamStep3AttrInfo,
    Bounds,
    DxfEntity,
    DxfModel,
    EntityType,
    Point2D,
    ProjectState,
)
from dxfstruct.core.results import BeamAttributeResult
from dxfstruct.pipeline.beam_common import (
    COLUMN_RESULT_LAYER,
    STEP2_LAYER,
    STEP3_DEBUG_LAYER,
    STEP3_LAYER,
    WALL_RESULT_LAYER,
    collect_beam_sources,
)


class BeamAttributes(DxfModel):
    code: str
    span: Optional[str] = None
    width: float
    height: float
    raw_label: str = ""
    from_label: bool = False


def find_beam_for_point(point: Optional[Point2D], obbs: List[Tuple[int, OBB]], tolerance: float = 20) -> Optional[int]:
    """Index of the first beam whose box (+tolerance) holds the point."""
    if point is None:
        return None
    for idx, obb in obbs:
        if obb.contains(point, tolerance):
            return idx
    return None


def distance_to_obb(point: Point2D, obb: OBB) -> float:
    """Distance from a point to the boundary of a box (0 inside)."""
    du, dv = obb.project(point)
    return math.hypot(max(0.0, abs(du) - obb.half_len), max(0.0, abs(dv) - obb.half_width))


def is_connected_along_axis(
    a: OBB,
    b: OBB,
    obbs: List[Tuple[int, OBB]],
    obstacle_bounds: List[Bounds],
    step: float = 50,
    tolerance: float = 20,
) -> bool:
    """
    Check that the gap between the facing ends of two beams is filled.

    The segment between the nearest pair of ends is sampled every ``step``
    (at least five intervals); every sample must fall in some beam or
    obstacle.
    """
    a_hi, a_lo = a.point_at(a.max_t), a.point_at(a.min_t)
    b_hi, b_lo = b.point_at(b.max_t), b.point_at(b.min_t)

    if a_hi.distance_to(b_lo) <= a_lo.distance_to(b_hi):
        p, q = a_hi, b_lo
    else:
        p, q = a_lo, b_hi

    steps = max(5, math.ceil(p.distance_to(q) / step))
    for s in range(steps + 1):
        t = s / steps
        sample = Point2D(x=p.x + (q.x - p.x) * t, y=p.y + (q.y - p.y) * t)
        if any(obb.contains(sample, tolerance) for _, obb in obbs):
            continue
        if any(box.contains_point(sample) for box in obstacle_bounds):
            continue
        return False
    return True


def _lane_offset(obb: OBB) -> float:
    return obb.center.x * -obb.u[1] + obb.center.y * obb.u[0]


def propagate_attributes(
    obbs: List[Tuple[int, OBB]],
    attrs: Dict[int, BeamAttributes],
    obstacle_bounds: List[Bounds],
    step: float = 50,
) -> int:
    """
    Copy labelled attributes to unlabelled beams continuing the same line.

    Beams are ordered by direction and lane. Each beam collects the later
    beams on its lane (parallel, lane offset within 200) that it connects
    to; the first label-derived attribute of the group fills the beams of
    the group that have none.

    Returns:
        Number of beams that received a copy
    """
    ordered = sorted(obbs, key=lambda item: (round(item[1].angle(), 1), _lane_offset(item[1])))
    filled = 0

    for i, (base_idx, base) in enumerate(ordered):
        group = [base_idx]
        for idx, other in ordered[i + 1:]:
            if abs(base.u[0] * other.u[0] + base.u[1] * other.u[1]) < 0.98:
                break
            if abs(_lane_offset(base) - _lane_offset(other)) > 200:
                break
            if is_connected_along_axis(base, other, obbs, obstacle_bounds, step):
                group.append(idx)

        defined = [attrs[g] for g in group if g in attrs and attrs[g].from_label]
        if not defined:
            continue
        primary = defined[0]
        for g in group:
            if g not in attrs:
                attrs[g] = primary.model_copy(update={"from_label": False})
                filled += 1
    return filled


def _label_attributes(label: BeamLabelInfo) -> BeamAttributes:
    parsed = label.parsed
    return BeamAttributes(
        code=parsed.code,
        span=parsed.span,
        width=parsed.width or 0,
        height=parsed.height or 0,
        raw_label=label.text_raw,
        from_label=True,
    )


def _debug_mark(point: Point2D, text: str, angle: float = 0.0) -> DxfEntity:
    return DxfEntity(
        type=EntityType.TEXT, layer=STEP3_DEBUG_LAYER,
        start=point, text=text, height=120, rotation=angle,
    )


@stage_guard("BEAM_ATTRIBUTES")
def calculate_beam_attribute_mounting(
    project: ProjectState,
    other_projects: Optional[List[ProjectState]] = None,
    config: Optional[Config] = None,
) -> BeamAttributeResult:
    """
    Mount label attributes on the step-2 beams.

    Args:
        project: Project with BEAM_STEP2_GEO output and merged beam labels
        other_projects: Drawings to borrow walls/columns from
        config: Threshold source (defaults to the packaged config)

    Returns:
        BeamAttributeResult with beams and labels on BEAM_STEP3_ATTR and
        label hit markers on BEAM_STEP3_TARGET_DEBUG
    """
    config = config or get_default_config()
    logger.info(f"Beam step 3 (attributes) for {project.name}")

    sources = collect_beam_sources(project, other_projects, config, "BEAM_ATTRIBUTES")
    obstacle_bounds = sources.obstacle_bounds()

    beams = [
        e.with_layer(STEP3_LAYER) for e in project.entities_on(STEP2_LAYER)
        if e.type not in (EntityType.TEXT, EntityType.MTEXT)
    ]
    if not beams:
        raise StageNotReady("BEAM_ATTRIBUTES", "No beams found in Step 2. Run Intersection Processing first")

    tolerance = config.get_classification_rule("beam_attributes", "hit_tolerance_mm", 20)
    radius = config.get_classification_rule("beam_attributes", "label_search_radius_mm", 1200)
    step = config.get_classification_rule("beam_attributes", "propagation_step_mm", 50)

    obbs = [(i, o) for i, o in ((i, OBB.from_polygon(b)) for i, b in enumerate(beams)) if o is not None]
    attrs: Dict[int, BeamAttributes] = {}
    debug: List[DxfEntity] = []
    unmatched: List[str] = []
    matched = 0

    pending: List[BeamLabelInfo] = []
    for label in project.beam_labels or []:
        if label.leader_start is None or label.leader_end is None:
            pending.append(label)
            continue
        if label.leader_start.distance_to(label.leader_end) < 1e-3:
            debug.append(_debug_mark(label.leader_start, "A=B invalid leader"))
            unmatched.append(label.id)
            continue

        anchor = find_beam_for_point(label.leader_start, obbs, tolerance)
        arrow = find_beam_for_point(label.leader_end, obbs, tolerance)
        if anchor is not None and arrow is not None and anchor != arrow:
            logger.debug(f"Label {label.id} touches beams {anchor} and {arrow}; skipped")
            unmatched.append(label.id)
            continue

        hit = anchor if anchor is not None else arrow
        if hit is None or label.parsed is None:
            unmatched.append(label.id)
            continue

        attrs[hit] = _label_attributes(label)
        span = f"({label.parsed.span})" if label.parsed.span else ""
        debug.append(_debug_mark(label.leader_end, f"{label.parsed.code}{span}", label.orientation))
        matched += 1

    for label in pending:
        if label.parsed is None or label.text_insert is None:
            unmatched.append(label.id)
            continue
        want_horizontal = label.source_layer.upper().endswith("_H")
        best = None
        best_dist = radius
        for idx, obb in obbs:
            if idx in attrs or obb.is_horizontal() != want_horizontal:
                continue
            d = distance_to_obb(label.text_insert, obb)
            if d <= best_dist:
                best, best_dist = idx, d
        if best is None:
            unmatched.append(label.id)
            continue
        attrs[best] = _label_attributes(label)
        debug.append(_debug_mark(label.text_insert, label.parsed.code))
        matched += 1

    propagated = propagate_attributes(obbs, attrs, obstacle_bounds, step)
    logger.debug(f"Labels matched: {matched}, propagated to {propagated} beams, unmatched: {len(unmatched)}")

    donor = next(
        (l.parsed for l in (project.beam_labels or []) if l.parsed and l.parsed.width and l.parsed.height),
        None,
    )
    fallback_width = donor.width if donor else config.get_geometry_default("default_beam_width_mm", 300)
    fallback_height = donor.height if donor else config.get_geometry_default("default_beam_height_mm", 600)

    geo_ids = {info.beam_index: info.id for info in (project.beam_step2_geo_infos or [])}

    infos: List[BeamStep3AttrInfo] = []
    labels: List[DxfEntity] = []
    for idx, obb in obbs:
        attr = attrs.get(idx) or BeamAttributes(
            code="UNKNOWN", width=fallback_width, height=fallback_height, raw_label="N/A",
        )
        info = BeamStep3AttrInfo(
            id=geo_ids.get(idx, f"ATTR-{idx}"),
            layer=STEP3_LAYER,
            vertices=list(beams[idx].vertices),
            bounds=entity_bounds(beams[idx]),
            center=obb.center,
            angle=obb.angle(),
            beam_index=idx,
            code=attr.code or "UNKNOWN",
            span=attr.span,
            width=attr.width,
            height=attr.height,
            raw_label=attr.raw_label,
            from_label=attr.from_label,
        )
        infos.append(info)
        labels.append(DxfEntity(
            type=EntityType.TEXT, layer=STEP3_LAYER,
            start=obb.center, text=f"{info.id} {info.code}", height=180, rotation=info.angle,
        ))

    unknown = sum(1 for i in infos if i.code == "UNKNOWN")
    logger.success(f"Mounted attributes on {len(infos)} beams (matched {matched}, unknown {unknown})")
    return BeamAttributeResult(
        stage="BEAM_ATTRIBUTES",
        result_layers=[STEP3_LAYER, STEP3_DEBUG_LAYER],
        entities=beams + debug + labels,
        infos=infos,
        unmatched_labels=unmatched,
        context_layers=["AXIS", COLUMN_RESULT_LAYER, WALL_RESULT_LAYER],
        message=f"Step 3: Mounted attributes on {len(infos)} beams (matched {matched}).",
    )

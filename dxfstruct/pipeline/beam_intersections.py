"""
Beam step 2: intersection processing.

Extends loose beam ends onto the beams they frame into, fuses duplicates and
marks every junction.
"""

from typing import List, Optional
from loguru import logger

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady, stage_guard
from dxfstruct.core.geometry import OBB, entity_bounds
from dxfstruct.core.models import BeamStep2GeoInfo, DxfEntity, EntityType, ProjectState
from dxfstruct.core.results import BeamIntersectionResult
from dxfstruct.pipeline.beam_common import (
    COLUMN_RESULT_LAYER,
    INTERSECTION_LAYER,
    STEP1_LAYER,
    STEP2_LAYER,
    WALL_RESULT_LAYER,
    collect_beam_sources,
    detect_intersections,
    extend_beams_to_perpendicular,
    is_beam_fully_anchored,
    merge_overlapping_beams,
)


@stage_guard("BEAM_INTERSECTIONS")
def calculate_beam_intersection_processing(
    project: ProjectState,
    other_projects: Optional[List[ProjectState]] = None,
    config: Optional[Config] = None,
) -> BeamIntersectionResult:
    """
    Extend, fuse and classify the raw beams.

    Beams whose both ends already sit in a wall or column are kept as they
    are; the rest are extended toward perpendicular beams.

    Args:
        project: Project with BEAM_STEP1_RAW output
        other_projects: Drawings to borrow walls/columns from
        config: Threshold source (defaults to the packaged config)

    Returns:
        BeamIntersectionResult with beams on BEAM_STEP2_GEO and junction
        markers on BEAM_STEP2_INTER_SECTION
    """
    config = config or get_default_config()
    logger.info(f"Beam step 2 (intersections) for {project.name}")

    sources = collect_beam_sources(project, other_projects, config, "BEAM_INTERSECTIONS")

    raw = [e for e in project.entities_on(STEP1_LAYER) if e.type == EntityType.LWPOLYLINE]
    if not raw:
        raise StageNotReady("BEAM_INTERSECTIONS", "Please run Step 1 (Raw Generation) first")

    default_search = config.get_classification_rule("beam_intersections", "default_search_mm", 600)
    max_search = max(sources.valid_widths) if sources.valid_widths else default_search
    viewports = [r.bounds for r in project.split_regions]
    obstacle_bounds = sources.obstacle_bounds()

    to_process: List[DxfEntity] = []
    anchored: List[DxfEntity] = []
    for beam in raw:
        (anchored if is_beam_fully_anchored(beam, obstacle_bounds) else to_process).append(beam)
    logger.debug(f"Processing {len(to_process)} segments ({len(anchored)} fully anchored)")

    extended = extend_beams_to_perpendicular(
        to_process, to_process + anchored, sources.obstacles, max_search, viewports,
    )
    beams = [e.with_layer(STEP2_LAYER) for e in extended + anchored]
    beams = merge_overlapping_beams(beams)

    entities: List[DxfEntity] = []
    geo_infos: List[BeamStep2GeoInfo] = []
    for idx, beam in enumerate(beams):
        obb = OBB.from_polygon(beam)
        angle = obb.angle() if obb else 0.0
        entities.append(beam)
        if obb is not None:
            entities.append(DxfEntity(
                type=EntityType.TEXT, layer=STEP2_LAYER,
                start=obb.center, text=f"B2-{idx}", height=200, rotation=angle,
            ))
        geo_infos.append(BeamStep2GeoInfo(
            id=f"B2-{idx}",
            layer=STEP2_LAYER,
            vertices=list(beam.vertices),
            bounds=entity_bounds(beam),
            center=obb.center if obb else None,
            angle=angle if obb else None,
            beam_index=idx,
        ))

    markers, inter_infos = detect_intersections(
        beams,
        config.get_classification_rule("beam_intersections", "cluster_cell_mm", 200),
        config.get_classification_rule("beam_intersections", "arm_tolerance_mm", 150),
    )

    counts = {j: sum(1 for i in inter_infos if i.junction == j) for j in ("C", "T", "L")}
    logger.success(
        f"Processed {len(beams)} beams, {len(inter_infos)} junctions "
        f"(C={counts['C']}, T={counts['T']}, L={counts['L']})"
    )
    return BeamIntersectionResult(
        stage="BEAM_INTERSECTIONS",
        result_layers=[STEP2_LAYER, INTERSECTION_LAYER],
        entities=entities + markers,
        geo_infos=geo_infos,
        inter_infos=inter_infos,
        context_layers=["AXIS", COLUMN_RESULT_LAYER, WALL_RESULT_LAYER],
        layers_to_hide=[STEP1_LAYER],
        message=f"Step 2: Processed intersections. Result: {len(beams)} segments, {len(inter_infos)} junctions.",
    )

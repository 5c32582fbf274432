"""
Beam step 1: raw generation.

Pairs BEAM-layer rails into rectangles and joins collinear pieces.
"""

from typing import List, Optional
from loguru import logger

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady, stage_guard
from dxfstruct.core.models import ProjectState
from dxfstruct.core.results import BeamRawResult
from dxfstruct.detection.parallel_polygons import (
    NOMINAL_BEAM_WIDTHS,
    find_parallel_polygons,
    merge_collinear_beams,
)
from dxfstruct.pipeline.beam_common import STEP1_LAYER, collect_beam_sources


@stage_guard("BEAM_RAW")
def calculate_beam_raw_generation(
    project: ProjectState,
    other_projects: Optional[List[ProjectState]] = None,
    config: Optional[Config] = None,
) -> BeamRawResult:
    """
    Synthesize raw beam rectangles.

    Widths quoted in beam labels restrict the accepted rail separations;
    without any, the nominal width set is used.

    Args:
        project: Split project with BEAM layers configured
        other_projects: Drawings to borrow walls/columns from
        config: Threshold source (defaults to the packaged config)

    Returns:
        BeamRawResult with rectangles on BEAM_STEP1_RAW
    """
    config = config or get_default_config()
    logger.info(f"Beam step 1 (raw generation) for {project.name}")

    sources = collect_beam_sources(project, other_projects, config, "BEAM_RAW")

    nominal = config.get_classification_rule("beam_raw", "nominal_widths_mm", sorted(NOMINAL_BEAM_WIDTHS))
    widths = set(sources.valid_widths) or set(nominal)

    polys = find_parallel_polygons(
        sources.lines,
        config.get_classification_rule("beam_raw", "search_tolerance_mm", 1200),
        STEP1_LAYER,
        sources.obstacles,
        sources.axis_lines,
        sources.text_pool,
        "BEAM",
        widths,
        config.get_classification_rule("beam_raw", "snap_distance_mm", 100),
    )
    if not polys:
        raise StageNotReady("BEAM_RAW", "No beam segments found")

    max_gap = config.get_classification_rule("beam_raw", "collinear_max_gap_mm", 2)
    merged = [p.with_layer(STEP1_LAYER) for p in merge_collinear_beams(polys, sources.obstacles, [], max_gap, False)]

    widths_used = sorted(widths)
    summary = ", ".join(str(w) for w in widths_used)
    logger.success(f"Generated {len(merged)} raw beam segments (widths: {summary})")
    return BeamRawResult(
        stage="BEAM_RAW",
        result_layers=[STEP1_LAYER],
        entities=merged,
        valid_widths=widths_used,
        context_layers=["AXIS"],
        message=f"Step 1: Generated {len(merged)} raw beam segments. (Widths: {summary})",
    )

"""
Project-level helpers: layer extraction, base-view bounds, and installing
stage results in replace mode.
"""

import re
from typing import Iterable, List, Optional, Pattern
from loguru import logger

from dxfstruct.core.models import Bounds, DxfEntity, EntityType, ProjectState, SemanticLayer
from dxfstruct.core.geometry import entity_bounds
from dxfstruct.core.results import StageResult
from dxfstruct.parsers.block_flattener import extract_entities


GENERATED_LAYERS = frozenset({
    "VIEWPORT_CALC", "VIEWPORT_DEBUG",
    "MERGE_LABEL_H", "MERGE_LABEL_V",
    "COLU_CALC", "WALL_CALC",
    "BEAM_STEP1_RAW",
    "BEAM_STEP2_GEO", "BEAM_STEP2_INTER_SECTION",
    "BEAM_STEP3_ATTR", "BEAM_STEP3_TARGET_DEBUG",
    "BEAM_STEP4_LOGIC", "BEAM_STEP4_ERRORS",
})


def source_layers(project: ProjectState) -> List[str]:
    """Drawing layers excluding those written by analysis stages."""
    return [name for name in project.data.layers if name not in GENERATED_LAYERS]


def extract_layers(project: ProjectState, layers: Iterable[str]) -> List[DxfEntity]:
    """World-space entities on the given layers (block references resolved)."""
    return extract_entities(
        list(layers),
        project.data.entities,
        project.data.blocks,
        project.data.block_base_points,
    )


def extract_role(project: ProjectState, role: SemanticLayer) -> List[DxfEntity]:
    return extract_layers(project, project.layer_config.get(role))


def find_entities_in_all_projects(projects: Iterable[ProjectState], layer_pattern: Pattern) -> List[DxfEntity]:
    """Entities from every project whose layer name matches ``layer_pattern``."""
    results: List[DxfEntity] = []
    for other in projects:
        matching = [name for name in other.data.layers if layer_pattern.search(name)]
        if matching:
            results.extend(extract_layers(other, matching))
    return results


def layer_regex(*names: str) -> Pattern:
    """Exact-name pattern for find_entities_in_all_projects."""
    return re.compile("^(" + "|".join(re.escape(n) for n in names) + ")$")


def is_entity_in_bounds(entity: DxfEntity, bounds_list: List[Bounds]) -> bool:
    """
    Check if an entity touches any of the given boxes.

    An entity counts as inside when its start or end point, a dimension
    definition point, or its bounds centre lies in a box, or when its
    bounds overlap the box.
    """
    ent_bounds = entity_bounds(entity)
    center = ent_bounds.center() if ent_bounds else None

    for box in bounds_list:
        if entity.start and box.contains_point(entity.start):
            return True
        if entity.end and box.contains_point(entity.end):
            return True
        if entity.type == EntityType.DIMENSION:
            if entity.measure_start and box.contains_point(entity.measure_start):
                return True
            if entity.measure_end and box.contains_point(entity.measure_end):
                return True
        if ent_bounds:
            if box.contains_point(center) or ent_bounds.overlaps(box):
                return True
    return False


def filter_entities_in_bounds(entities: List[DxfEntity], bounds_list: Optional[List[Bounds]]) -> List[DxfEntity]:
    """Keep entities inside any box; no boxes means no filtering."""
    if not bounds_list:
        return list(entities)
    return [e for e in entities if is_entity_in_bounds(e, bounds_list)]


def get_merge_base_bounds(project: ProjectState, margin: float = 0.0) -> Optional[List[Bounds]]:
    """
    Bounds of the base views: regions without numbering or numbered 1.

    Args:
        project: Project with split regions
        margin: Expansion applied to each box

    Returns:
        List of boxes, or None when the drawing was never split
    """
    if not project.split_regions:
        return None
    return [
        r.bounds.expand(margin) if margin > 0 else r.bounds
        for r in project.split_regions
        if r.info is None or r.info.index == 1
    ]


def apply_result(project: ProjectState, result: StageResult) -> ProjectState:
    """
    Install a stage result in replace mode.

    Entities on every result layer (and on any layer the new entities use)
    are removed before the new ones are appended, so re-applying the same
    result leaves the drawing unchanged.

    Args:
        project: Current state (not modified)
        result: Stage output

    Returns:
        New ProjectState
    """
    affected = set(result.result_layers)
    affected.update(e.layer for e in result.entities)

    kept = [e for e in project.data.entities if e.layer not in affected]
    layers = sorted(set(project.data.layers) | affected)

    data = project.data.model_copy(update={
        "entities": kept + list(result.entities),
        "layers": layers,
    })

    active = set(project.active_layers) | affected
    active.update(l for l in result.context_layers if l in layers)
    active.difference_update(result.layers_to_hide)

    filled = set(project.filled_layers) | set(result.filled_layers)

    removed = len(project.data.entities) - len(kept)
    logger.debug(
        f"[{result.stage}] replaced {removed} entities with {len(result.entities)} "
        f"on {len(affected)} layers"
    )

    update = {"data": data, "active_layers": active, "filled_layers": filled}
    update.update(result.project_updates())
    return project.model_copy(update=update)

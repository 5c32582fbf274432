"""
Viewport clustering and title resolution.

A sheet usually holds several views (one per floor or rebar scheme). Axis
geometry is clustered into one box per view and each box gets the nearest
underlined text as its title.
"""

import re
from typing import List, Optional, Tuple
from loguru import logger

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady, stage_guard
from dxfstruct.core.geometry import bounds_rectangle, entity_bounds, segments_of
from dxfstruct.core.models import (
    Bounds,
    DxfEntity,
    EntityType,
    Point2D,
    ProjectState,
    SemanticLayer,
    ViewportInfo,
    ViewportRegion,
)
from dxfstruct.core.results import SplitResult
from dxfstruct.pipeline.project import extract_layers, source_layers


RESULT_LAYER = "VIEWPORT_CALC"
DEBUG_LAYER = "VIEWPORT_DEBUG"

_NUMERIC_TEXT = re.compile(r"^[\d\s,.xX*×+\-=]+$")
_TITLE_NUMBERED = re.compile(r"^(.*)[(（](\d+)[)）]$")
_TITLE_CHINESE = re.compile(r"^(.*)[(（]([一二三四五六七八九十]+)[)）]$")
_TITLE_DASH = re.compile(r"^(.*)-(\d+)$")

CHINESE_NUMERALS = {
    "一": 1, "二": 2, "三": 3, "四": 4, "五": 5,
    "六": 6, "七": 7, "八": 8, "九": 9, "十": 10,
}


def group_entities_by_proximity(entities: List[DxfEntity], tolerance: float = 5000) -> List[Bounds]:
    """
    Cluster entities into boxes whose gaps are within tolerance.

    Boxes are merged repeatedly until no two remaining boxes come within
    ``tolerance`` of each other.

    Args:
        entities: Entities to cluster (usually axis lines)
        tolerance: Joining distance

    Returns:
        One box per cluster, in discovery order
    """
    clusters = [b for b in (entity_bounds(e) for e in entities) if b is not None]
    if not clusters:
        return []

    changed = True
    while changed:
        changed = False
        merged = set()
        next_clusters = []
        for i, current in enumerate(clusters):
            if i in merged:
                continue
            for j in range(i + 1, len(clusters)):
                if j in merged:
                    continue
                if current.expand(tolerance).overlaps(clusters[j]):
                    current = current.union(clusters[j])
                    merged.add(j)
                    changed = True
            next_clusters.append(current)
        clusters = next_clusters

    return clusters


def has_underline(text: DxfEntity, lines: List[DxfEntity]) -> bool:
    """
    Check for a horizontal segment just below a text.

    The segment must lie between 0.2h above and 0.6h below the text
    baseline and cover more than 30% of the estimated text width
    (chars x h x 0.7).
    """
    h = text.height or 300
    w = len(text.text) * h * 0.7
    min_x = text.start.x
    max_x = text.start.x + w
    min_y = text.start.y

    for line in lines:
        for p1, p2 in segments_of(line):
            if abs(p1.y - p2.y) > h * 0.5:
                continue
            gap = min_y - (p1.y + p2.y) / 2
            if gap < -h * 0.2 or gap > h * 0.6:
                continue
            overlap = min(max(p1.x, p2.x), max_x) - max(min(p1.x, p2.x), min_x)
            if overlap > w * 0.3:
                return True
    return False


def find_title_for_bounds(
    box: Bounds,
    texts: List[DxfEntity],
    lines: List[DxfEntity],
    layer_filter: str = "",
    step: float = 500,
    max_margin: float = 25000,
) -> Tuple[Optional[str], List[Bounds]]:
    """
    Search expanding rings around a view for its underlined title.

    Each ring only tests texts that were outside the previous ring. Texts on
    axis or dimension layers and purely numeric strings are ignored. The
    tallest underlined text of the first ring with any candidate wins.

    Args:
        box: View bounds
        texts: TEXT entities
        lines: LINE/LWPOLYLINE entities that may underline a title
        layer_filter: Case-insensitive substring the text layer must contain
        step: Ring growth per iteration
        max_margin: Largest ring margin

    Returns:
        (title or None, rings scanned)
    """
    scanned: List[Bounds] = []
    margin = step
    while margin <= max_margin:
        outer = box.expand(margin)
        inner = box.expand(max(0.0, margin - step))
        scanned.append(outer)

        found = []
        for t in texts:
            if t.start is None or not t.text:
                continue
            if not outer.contains_point(t.start) or inner.contains_point(t.start):
                continue
            layer = t.layer.upper()
            if "AXIS" in layer or "DIM" in layer:
                continue
            if layer_filter and layer_filter.upper() not in layer:
                continue
            if _NUMERIC_TEXT.match(t.text):
                continue
            if has_underline(t, lines):
                found.append(t)

        if found:
            found.sort(key=lambda t: -(t.height or 0))
            return found[0].text, scanned

        margin += step

    return None, scanned


def parse_viewport_title(title: str) -> Optional[ViewportInfo]:
    """
    Split a numbered title into prefix and index.

    Recognises "X(2)", "X（2）", "X(二)" and "X-2". Chinese numerals beyond
    ten parse as index 0.

    Args:
        title: Viewport title

    Returns:
        ViewportInfo, or None for unnumbered titles
    """
    match = _TITLE_NUMBERED.match(title)
    if match:
        return ViewportInfo(prefix=match.group(1).strip(), index=int(match.group(2)))

    match = _TITLE_CHINESE.match(title)
    if match:
        return ViewportInfo(prefix=match.group(1).strip(), index=CHINESE_NUMERALS.get(match.group(2), 0))

    match = _TITLE_DASH.match(title)
    if match:
        return ViewportInfo(prefix=match.group(1).strip(), index=int(match.group(2)))

    return None


@stage_guard("SPLIT")
def calculate_split_regions(project: ProjectState, config: Optional[Config] = None) -> SplitResult:
    """
    Cluster axis geometry into views and title them.

    Args:
        project: Project with AXIS/AXIS_OTHER layers configured
        config: Threshold source (defaults to the packaged config)

    Returns:
        SplitResult with regions, outlines on VIEWPORT_CALC and scanned
        rings on VIEWPORT_DEBUG; None when no axis geometry is available
    """
    config = config or get_default_config()
    logger.info(f"Splitting views of {project.name}")

    axis_layers = project.layer_config.get(SemanticLayer.AXIS) + project.layer_config.get(SemanticLayer.AXIS_OTHER)
    if not axis_layers:
        raise StageNotReady("SPLIT", "No AXIS layers configured")

    axis_lines = [
        e for e in extract_layers(project, axis_layers)
        if e.type in (EntityType.LINE, EntityType.LWPOLYLINE)
    ]
    if not axis_lines:
        raise StageNotReady("SPLIT", "No AXIS lines found in configured layers")

    title_layers = project.layer_config.get(SemanticLayer.VIEWPORT_TITLE)
    texts = [
        e for e in extract_layers(project, title_layers or source_layers(project))
        if e.type == EntityType.TEXT
    ]
    lines = [
        e for e in extract_layers(project, source_layers(project))
        if e.type in (EntityType.LINE, EntityType.LWPOLYLINE)
    ]

    tolerance = config.get_classification_rule("viewport_split", "cluster_tolerance_mm", 5000)
    step = config.get_classification_rule("viewport_split", "title_step_mm", 500)
    max_margin = config.get_classification_rule("viewport_split", "title_max_margin_mm", 25000)

    clusters = group_entities_by_proximity(axis_lines, tolerance)
    logger.debug(f"Axis clusters: {len(clusters)}")

    regions: List[ViewportRegion] = []
    outlines: List[DxfEntity] = []
    debug: List[DxfEntity] = []
    for i, box in enumerate(clusters):
        title, scanned = find_title_for_bounds(box, texts, lines, "", step, max_margin)
        label = title or f"BLOCK {i + 1}"
        regions.append(ViewportRegion(bounds=box, title=label, info=parse_viewport_title(label)))

        outlines.append(bounds_rectangle(box, RESULT_LAYER))
        outlines.append(DxfEntity(
            type=EntityType.TEXT,
            layer=RESULT_LAYER,
            text=label,
            start=Point2D(x=box.min_x, y=box.max_y + 500),
            height=250,
        ))
        debug.extend(bounds_rectangle(sb, DEBUG_LAYER) for sb in scanned)

    if not regions:
        raise StageNotReady("SPLIT", "Could not determine split regions")

    titled = sum(1 for r in regions if not r.title.startswith("BLOCK "))
    logger.success(f"Split into {len(regions)} views ({titled} titled)")
    return SplitResult(
        stage="SPLIT",
        result_layers=[RESULT_LAYER, DEBUG_LAYER],
        entities=outlines + debug,
        regions=regions,
        context_layers=axis_layers,
        message=f"Found {len(regions)} views",
    )

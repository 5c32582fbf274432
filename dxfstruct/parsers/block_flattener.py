"""
Block flattening.

Resolves INSERT/MINSERT references into world-space entities so every later
stage can treat the drawing as a flat list of primitives.
"""

import math
from typing import Dict, Iterable, List, Optional, Set
from loguru import logger

from dxfstruct.core.models import DxfEntity, EntityType, Point2D, Transform


_POINT_FIELDS = ("start", "end", "center", "measure_start", "measure_end")


def _transform_entity(entity: DxfEntity, transform: Transform, layer: str) -> DxfEntity:
    """Copy an entity into the parent space of ``transform``."""
    update = {"layer": layer}

    for field in _POINT_FIELDS:
        point = getattr(entity, field)
        if point is not None:
            update[field] = transform.apply(point)

    if entity.vertices:
        update["vertices"] = [transform.apply(v) for v in entity.vertices]

    if entity.radius is not None:
        update["radius"] = entity.radius * abs(transform.scale.x or 1.0)

    if transform.rotation:
        if entity.start_angle is not None:
            update["start_angle"] = entity.start_angle + transform.rotation
        if entity.end_angle is not None:
            update["end_angle"] = entity.end_angle + transform.rotation
        if entity.rotation is not None or entity.is_text():
            update["rotation"] = (entity.rotation or 0.0) + transform.rotation

    if entity.height is not None and entity.is_text():
        update["height"] = entity.height * abs(transform.scale.y or 1.0)

    return entity.model_copy(update=update)


def _grid_offsets(insert: DxfEntity) -> List[Point2D]:
    """Per-instance offsets of a (M)INSERT grid, rotated by the instance rotation."""
    rows = max(1, insert.row_count or 1)
    cols = max(1, insert.column_count or 1)
    row_spacing = insert.row_spacing or 0.0
    col_spacing = insert.column_spacing or 0.0

    rad = math.radians(insert.rotation or 0.0)
    cos, sin = math.cos(rad), math.sin(rad)

    offsets = []
    for r in range(rows):
        for c in range(cols):
            ox = c * col_spacing
            oy = r * row_spacing
            offsets.append(Point2D(x=ox * cos - oy * sin, y=ox * sin + oy * cos))
    return offsets


def _flatten(
    entities: Iterable[DxfEntity],
    blocks: Dict[str, List[DxfEntity]],
    block_base_points: Dict[str, Point2D],
    target_layers: Optional[Set[str]],
    parent: Transform,
    parent_layer: Optional[str],
    visited: Set[str],
    out: List[DxfEntity],
) -> None:
    for entity in entities:
        layer = entity.layer
        if layer == "0" and parent_layer is not None:
            layer = parent_layer

        name = entity.block_name
        if entity.type == EntityType.INSERT and name and name in blocks:
            if name in visited:
                logger.debug(f"Skipping recursive block reference: {name}")
                continue

            scale = entity.scale or Point2D(x=1.0, y=1.0)
            child_scale = Point2D(
                x=parent.scale.x * (scale.x or 1.0),
                y=parent.scale.y * (scale.y or 1.0),
            )
            child_rotation = parent.rotation + (entity.rotation or 0.0)

            base = block_base_points.get(name, Point2D(x=0.0, y=0.0))
            base_offset = Transform(scale=child_scale, rotation=child_rotation).apply(base)

            insert_point = entity.start or Point2D(x=0.0, y=0.0)
            for offset in _grid_offsets(entity):
                local = insert_point.translated(offset.x, offset.y)
                position = parent.apply(local)
                child = Transform(
                    scale=child_scale,
                    rotation=child_rotation,
                    translation=Point2D(x=position.x - base_offset.x, y=position.y - base_offset.y),
                )
                _flatten(
                    blocks[name], blocks, block_base_points, target_layers,
                    child, layer, visited | {name}, out,
                )
            continue

        if target_layers is not None and layer not in target_layers:
            continue

        out.append(_transform_entity(entity, parent, layer))


def extract_entities(
    target_layers: Optional[Iterable[str]],
    entities: List[DxfEntity],
    blocks: Dict[str, List[DxfEntity]],
    block_base_points: Optional[Dict[str, Point2D]] = None,
) -> List[DxfEntity]:
    """
    Flatten block references into world-space entities.

    Layer "0" inside a block inherits the effective layer of the enclosing
    INSERT. An INSERT whose block is unknown (e.g. a broken external
    reference) is kept as a placed INSERT entity and not expanded; one that
    would recurse into a block already on the current path is dropped.

    Args:
        target_layers: Keep only entities whose effective layer is listed
            (None keeps every layer)
        entities: Root entities
        blocks: Block definitions by name
        block_base_points: Block base points by name (missing = origin)

    Returns:
        New entities in depth-first input order; inputs are not modified
    """
    targets = set(target_layers) if target_layers is not None else None
    out: List[DxfEntity] = []
    _flatten(
        entities, blocks, block_base_points or {}, targets,
        Transform.identity(), None, set(), out,
    )
    return out


def explode_polyline_segments(entity: DxfEntity) -> List[DxfEntity]:
    """
    Split a polyline into LINE segments (closing segment included when closed).

    Non-polyline entities are returned unchanged in a single-element list.
    """
    if entity.type != EntityType.LWPOLYLINE or not entity.vertices:
        return [entity]

    verts = entity.vertices
    count = len(verts)
    last = count if entity.closed else count - 1

    lines = []
    for i in range(last):
        a = verts[i]
        b = verts[(i + 1) % count]
        if a == b:
            continue
        lines.append(DxfEntity(type=EntityType.LINE, layer=entity.layer, start=a, end=b))
    return lines

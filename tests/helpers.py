"""Entity factories and sample drawings shared by the tests."""

from typing import Dict, List, Optional

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.models import DxfData, DxfEntity, EntityType, Point2D, ProjectState


def pt(x, y):
    return Point2D(x=float(x), y=float(y))


def line(x1, y1, x2, y2, layer="0"):
    return DxfEntity(type=EntityType.LINE, layer=layer, start=pt(x1, y1), end=pt(x2, y2))


def poly(points, layer="0", closed=True):
    return DxfEntity(
        type=EntityType.LWPOLYLINE, layer=layer, closed=closed,
        vertices=[pt(x, y) for x, y in points],
    )


def rect(x1, y1, x2, y2, layer="0"):
    return poly([(x1, y1), (x2, y1), (x2, y2), (x1, y2)], layer)


def text(value, x, y, layer="0", height=250, rotation=0.0):
    return DxfEntity(
        type=EntityType.TEXT, layer=layer, start=pt(x, y),
        text=value, height=height, rotation=rotation,
    )


def make_project(entities: List[DxfEntity], name: str = "test",
                 config: Optional[Config] = None,
                 blocks: Optional[Dict[str, List[DxfEntity]]] = None) -> ProjectState:
    """ProjectState over the given entities with roles assigned from the config."""
    config = config or get_default_config()
    layers = sorted({e.layer for e in entities})
    return ProjectState(
        name=name,
        data=DxfData(entities=entities, layers=layers, blocks=blocks or {}),
        layer_config=config.build_layer_config(layers),
        active_layers=set(layers),
    )


def titled_grid(dx=0.0, title="BEAM PLAN"):
    """Axis grid (two bays of 6000) with an underlined title above it."""
    width = len(title) * 500 * 0.7
    return [
        line(dx, -3000, dx, 3000, "AXIS"),
        line(dx + 6000, -3000, dx + 6000, 3000, "AXIS"),
        line(dx - 1000, 0, dx + 7000, 0, "AXIS"),
        text(title, dx, 4200, "TITLE", height=500),
        line(dx, 4050, dx + width + 300, 4050, "TITLE"),
    ]


def single_beam_drawing() -> List[DxfEntity]:
    """
    One 6000 long KL1 beam between two columns.

    Rails are 300 apart along y=0, columns sit just outside x=0 and x=6000,
    and a leader drops from the label onto the beam.
    """
    return titled_grid() + [
        line(0, 150, 6000, 150, "BEAM"),
        line(0, -150, 6000, -150, "BEAM"),
        rect(-500, -250, 0, 250, "COLU"),
        rect(6000, -250, 6500, 250, "COLU"),
        line(3000, 800, 3000, 0, "BEAM_LABEL"),
        text("KL1 300x500", 3000, 900, "BEAM_LABEL"),
    ]

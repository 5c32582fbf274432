"""
Core data models for dxfstruct.

All models use Pydantic for validation and serialization. JSON field names
are camelCase so exported analysis snapshots stay readable by the drawing
viewer that consumes them.
"""

from enum import Enum
from typing import List, Optional, Dict, Set
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
import math
import uuid


class DxfModel(BaseModel):
    """Base model with camelCase JSON aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EntityType(str, Enum):
    """Entity kinds understood by the inference engine."""
    LINE = "LINE"
    LWPOLYLINE = "LWPOLYLINE"
    CIRCLE = "CIRCLE"
    ARC = "ARC"
    TEXT = "TEXT"
    MTEXT = "MTEXT"
    DIMENSION = "DIMENSION"
    INSERT = "INSERT"
    ATTRIB = "ATTRIB"


TEXT_TYPES = (EntityType.TEXT, EntityType.MTEXT, EntityType.ATTRIB)


class SemanticLayer(str, Enum):
    """Roles a drawing layer can play in the analysis."""
    AXIS = "AXIS"
    AXIS_OTHER = "AXIS_OTHER"
    COLUMN = "COLUMN"
    WALL = "WALL"
    BEAM = "BEAM"
    BEAM_LABEL = "BEAM_LABEL"
    BEAM_IN_SITU_LABEL = "BEAM_IN_SITU_LABEL"
    VIEWPORT_TITLE = "VIEWPORT_TITLE"


class Point2D(DxfModel):
    """2D point in drawing space (mm, Y-up)."""
    x: float
    y: float

    def distance_to(self, other: "Point2D") -> float:
        """Calculate Euclidean distance to another point."""
        return math.hypot(self.x - other.x, self.y - other.y)

    def translated(self, dx: float, dy: float) -> "Point2D":
        return Point2D(x=self.x + dx, y=self.y + dy)

    def __hash__(self) -> int:
        return hash((round(self.x, 6), round(self.y, 6)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Point2D):
            return False
        return abs(self.x - other.x) < 1e-6 and abs(self.y - other.y) < 1e-6


class Bounds(DxfModel):
    """Axis-aligned bounding box."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @model_validator(mode="after")
    def validate_order(self) -> "Bounds":
        """Ensure min corner does not exceed max corner."""
        if self.min_x > self.max_x or self.min_y > self.max_y:
            raise ValueError(
                f"Invalid bounds: ({self.min_x}, {self.min_y}) > ({self.max_x}, {self.max_y})"
            )
        return self

    @classmethod
    def from_points(cls, points: List[Point2D]) -> Optional["Bounds"]:
        """Build bounds enclosing the given points (None when empty)."""
        if not points:
            return None
        xs = [p.x for p in points]
        ys = [p.y for p in points]
        return cls(min_x=min(xs), min_y=min(ys), max_x=max(xs), max_y=max(ys))

    def contains_point(self, point: Point2D) -> bool:
        """Check if point is inside bounding box (edges inclusive)."""
        return (self.min_x <= point.x <= self.max_x and
                self.min_y <= point.y <= self.max_y)

    def overlaps(self, other: "Bounds") -> bool:
        """Check if two boxes touch or overlap."""
        return not (self.max_x < other.min_x or self.min_x > other.max_x or
                    self.max_y < other.min_y or self.min_y > other.max_y)

    def expand(self, margin: float) -> "Bounds":
        return Bounds(
            min_x=self.min_x - margin,
            min_y=self.min_y - margin,
            max_x=self.max_x + margin,
            max_y=self.max_y + margin,
        )

    def union(self, other: "Bounds") -> "Bounds":
        return Bounds(
            min_x=min(self.min_x, other.min_x),
            min_y=min(self.min_y, other.min_y),
            max_x=max(self.max_x, other.max_x),
            max_y=max(self.max_y, other.max_y),
        )

    def center(self) -> Point2D:
        return Point2D(x=(self.min_x + self.max_x) / 2, y=(self.min_y + self.max_y) / 2)

    def width(self) -> float:
        return self.max_x - self.min_x

    def height(self) -> float:
        return self.max_y - self.min_y

    def corners(self) -> List[Point2D]:
        """Corners in counter-clockwise order starting at (min_x, min_y)."""
        return [
            Point2D(x=self.min_x, y=self.min_y),
            Point2D(x=self.max_x, y=self.min_y),
            Point2D(x=self.max_x, y=self.max_y),
            Point2D(x=self.min_x, y=self.max_y),
        ]


class DxfEntity(DxfModel):
    """
    Tagged geometric entity.

    Only the fields relevant to ``type`` are populated. Text-like entities use
    ``height`` for the glyph height and ``rotation`` for the text angle; INSERT
    uses ``rotation`` for the instance rotation.
    """
    type: EntityType
    layer: str = "0"

    start: Optional[Point2D] = None
    end: Optional[Point2D] = None
    center: Optional[Point2D] = None
    radius: Optional[float] = None
    start_angle: Optional[float] = None  # degrees
    end_angle: Optional[float] = None    # degrees
    vertices: Optional[List[Point2D]] = None
    closed: Optional[bool] = None

    text: Optional[str] = None
    height: Optional[float] = None
    rotation: Optional[float] = None

    # DIMENSION definition points
    measure_start: Optional[Point2D] = None
    measure_end: Optional[Point2D] = None

    # INSERT / MINSERT
    block_name: Optional[str] = None
    scale: Optional[Point2D] = None
    row_count: Optional[int] = None
    column_count: Optional[int] = None
    row_spacing: Optional[float] = None
    column_spacing: Optional[float] = None

    def with_layer(self, layer: str) -> "DxfEntity":
        """Return a copy of this entity placed on another layer."""
        return self.model_copy(update={"layer": layer})

    def is_text(self) -> bool:
        return self.type in TEXT_TYPES


class DxfData(DxfModel):
    """Decoded drawing handed over by the DXF reader."""
    entities: List[DxfEntity] = Field(default_factory=list)
    layers: List[str] = Field(default_factory=list)
    blocks: Dict[str, List[DxfEntity]] = Field(default_factory=dict)
    block_base_points: Dict[str, Point2D] = Field(default_factory=dict)


class Transform(DxfModel):
    """Accumulated block transform (scale, then rotate, then translate)."""
    scale: Point2D = Field(default_factory=lambda: Point2D(x=1.0, y=1.0))
    rotation: float = 0.0  # degrees
    translation: Point2D = Field(default_factory=lambda: Point2D(x=0.0, y=0.0))

    @classmethod
    def identity(cls) -> "Transform":
        return cls()

    def apply(self, point: Point2D) -> Point2D:
        """Transform a point from block space to the parent space."""
        sx = point.x * (self.scale.x or 1.0)
        sy = point.y * (self.scale.y or 1.0)
        rad = math.radians(self.rotation)
        cos, sin = math.cos(rad), math.sin(rad)
        return Point2D(
            x=sx * cos - sy * sin + self.translation.x,
            y=sx * sin + sy * cos + self.translation.y,
        )


class LayerConfig(DxfModel):
    """Mapping from semantic role to concrete drawing layers."""
    roles: Dict[SemanticLayer, List[str]] = Field(default_factory=dict)
    orientation: Dict[str, str] = Field(default_factory=dict)  # layer -> "H" / "V"

    @field_validator("orientation")
    @classmethod
    def validate_orientation(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Only H and V orientation overrides are meaningful."""
        for layer, value in v.items():
            if value not in ("H", "V"):
                raise ValueError(f"Orientation for layer {layer!r} must be 'H' or 'V', got {value!r}")
        return v

    def get(self, role: SemanticLayer) -> List[str]:
        """Get layer names for a role (empty list when unassigned)."""
        return list(self.roles.get(role, []))


class ViewportInfo(DxfModel):
    """Numbering parsed from a viewport title, e.g. "X向梁配筋-1"."""
    prefix: str
    index: int


class ViewportRegion(DxfModel):
    """One logical view of the drawing."""
    bounds: Bounds
    title: str
    info: Optional[ViewportInfo] = None


class ViewMergeMapping(DxfModel):
    """Registration of one view onto the base view of its group."""
    source_region_index: int
    target_region_index: int
    vector: Point2D
    bounds: Bounds
    title: str


class MergedViewData(DxfModel):
    mappings: List[ViewMergeMapping] = Field(default_factory=list)


class ParsedBeamLabel(DxfModel):
    """Structured content of a beam annotation such as "KL1(2) 250x500"."""
    code: str
    span: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None

    def has_dimensions(self) -> bool:
        return bool(self.width) and bool(self.height)


class BeamLabelInfo(DxfModel):
    """Merged beam annotation paired with its leader line."""
    id: str
    source_layer: str
    orientation: float  # leader angle in degrees
    text_raw: str
    text_insert: Optional[Point2D] = None
    leader_start: Optional[Point2D] = None  # leader end nearest to the text
    leader_end: Optional[Point2D] = None    # leader end pointing at the beam
    parsed: Optional[ParsedBeamLabel] = None
    needs_review: bool = False


class ColumnInfo(DxfModel):
    id: str
    layer: str
    bounds: Bounds
    width: float
    height: float
    center: Point2D


class WallInfo(DxfModel):
    id: str
    layer: str
    bounds: Bounds
    thickness: float
    center: Point2D


class StageInfo(DxfModel):
    """Common fields for per-stage beam records."""
    id: str
    layer: str
    shape: str = "rect"
    vertices: List[Point2D] = Field(default_factory=list)
    bounds: Bounds
    center: Optional[Point2D] = None
    angle: Optional[float] = None


class BeamIntersectionInfo(StageInfo):
    """Crossing of perpendicular beams detected in step 2."""
    junction: str  # "C", "T" or "L"
    beam_indexes: List[int] = Field(default_factory=list)

    @field_validator("junction")
    @classmethod
    def validate_junction(cls, v: str) -> str:
        if v not in ("C", "T", "L"):
            raise ValueError(f"Unknown junction shape: {v}")
        return v


class BeamStep2GeoInfo(StageInfo):
    beam_index: int


class BeamStep3AttrInfo(StageInfo):
    beam_index: int
    code: str
    span: Optional[str] = None
    width: float
    height: float
    raw_label: str = ""
    from_label: bool = False


class BeamStep4TopologyInfo(StageInfo):
    """Final measurable beam instance."""
    beam_index: int
    parent_beam_index: int
    code: str
    span: Optional[str] = None
    width: float
    height: float
    raw_label: str = ""
    length: float
    volume: float

    @field_validator("width", "height", "length", "volume")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Measured quantities cannot be negative."""
        if v < 0:
            raise ValueError("Beam measurements must be non-negative")
        return v


class ProjectState(DxfModel):
    """
    Analysis state of one loaded drawing.

    Stages never mutate a ProjectState; they return results that
    ``pipeline.project.apply_result`` folds into a new instance.
    """
    guid: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    data: DxfData
    layer_config: LayerConfig = Field(default_factory=LayerConfig)

    split_regions: Optional[List[ViewportRegion]] = None
    merged_view_data: Optional[MergedViewData] = None
    beam_labels: Optional[List[BeamLabelInfo]] = None
    columns: Optional[List[ColumnInfo]] = None
    walls: Optional[List[WallInfo]] = None

    beam_step2_geo_infos: Optional[List[BeamStep2GeoInfo]] = None
    beam_step2_inter_infos: Optional[List[BeamIntersectionInfo]] = None
    beam_step3_attr_infos: Optional[List[BeamStep3AttrInfo]] = None
    beam_step4_topology_infos: Optional[List[BeamStep4TopologyInfo]] = None

    active_layers: Set[str] = Field(default_factory=set)
    filled_layers: Set[str] = Field(default_factory=set)

    def entities_on(self, layer: str) -> List[DxfEntity]:
        """Root entities placed directly on a layer."""
        return [e for e in self.data.entities if e.layer == layer]

    def has_layer(self, layer: str) -> bool:
        return layer in self.data.layers

    def __str__(self) -> str:
        return f"ProjectState({self.name}, entities={len(self.data.entities)}, layers={len(self.data.layers)})"

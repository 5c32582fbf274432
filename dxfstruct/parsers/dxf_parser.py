"""
DXF file parser using ezdxf library.

Converts modelspace entities and block definitions into the core entity
model consumed by the inference stages.
"""

from pathlib import Path
from typing import Dict, List, Optional
from loguru import logger

try:
    import ezdxf
    from ezdxf.document import Drawing
except ImportError:
    raise ImportError(
        "ezdxf is required for DXF parsing. Install with: pip install ezdxf"
    )

from dxfstruct.core.models import DxfData, DxfEntity, EntityType, Point2D


def _point(vec) -> Point2D:
    return Point2D(x=float(vec.x), y=float(vec.y))


class DXFParser:
    """Reader adapter from an ezdxf document to DxfData."""

    SUPPORTED_TYPES = {
        "LINE", "LWPOLYLINE", "POLYLINE", "CIRCLE", "ARC",
        "TEXT", "MTEXT", "ATTRIB", "DIMENSION", "INSERT",
    }

    def __init__(self, file_path: str):
        """
        Initialize DXF parser.

        Args:
            file_path: Path to DXF file
        """
        self.file_path = Path(file_path)
        self.doc: Optional[Drawing] = None
        self.skipped: Dict[str, int] = {}

    def parse(self) -> DxfData:
        """
        Read the file and convert it.

        Returns:
            DxfData with root entities, layers and blocks

        Raises:
            FileNotFoundError: If DXF file doesn't exist
            IOError: If the file cannot be read
            ezdxf.DXFStructureError: If file is not valid DXF
        """
        logger.info(f"Parsing DXF file: {self.file_path}")

        if not self.file_path.exists():
            raise FileNotFoundError(f"DXF file not found: {self.file_path}")

        try:
            self.doc = ezdxf.readfile(str(self.file_path))
        except (IOError, ezdxf.DXFStructureError) as e:
            logger.error(f"Failed to parse DXF file: {e}")
            raise

        return self.convert(self.doc)

    def convert(self, doc: Drawing) -> DxfData:
        """Convert an already loaded ezdxf document."""
        self.doc = doc
        self.skipped = {}

        entities = self._convert_all(doc.modelspace())

        blocks: Dict[str, List[DxfEntity]] = {}
        base_points: Dict[str, Point2D] = {}
        for block in doc.blocks:
            if block.name.startswith("*"):
                continue
            blocks[block.name] = self._convert_all(block)
            base_points[block.name] = _point(block.block.dxf.base_point)

        layers = sorted({layer.dxf.name for layer in doc.layers} | {e.layer for e in entities})

        if self.skipped:
            logger.debug(
                "Skipped unsupported entities: "
                + ", ".join(f"{k}={v}" for k, v in sorted(self.skipped.items()))
            )
        logger.success(
            f"Parsed {len(entities)} entities, {len(layers)} layers, {len(blocks)} blocks"
        )
        return DxfData(entities=entities, layers=layers, blocks=blocks, block_base_points=base_points)

    def _convert_all(self, layout) -> List[DxfEntity]:
        result = []
        for entity in layout:
            dxftype = entity.dxftype()
            if dxftype not in self.SUPPORTED_TYPES:
                self.skipped[dxftype] = self.skipped.get(dxftype, 0) + 1
                continue
            converted = self._convert_entity(entity)
            if converted is not None:
                result.extend(converted)
        return result

    def _convert_entity(self, entity) -> Optional[List[DxfEntity]]:
        """Convert one ezdxf entity (INSERT yields its attributes as well)."""
        dxftype = entity.dxftype()
        layer = entity.dxf.layer

        if dxftype == "LINE":
            return [DxfEntity(
                type=EntityType.LINE, layer=layer,
                start=_point(entity.dxf.start), end=_point(entity.dxf.end),
            )]

        if dxftype == "LWPOLYLINE":
            verts = [Point2D(x=float(x), y=float(y)) for x, y in entity.get_points("xy")]
            return [DxfEntity(
                type=EntityType.LWPOLYLINE, layer=layer,
                vertices=verts, closed=bool(entity.closed),
            )]

        if dxftype == "POLYLINE":
            if not entity.is_2d_polyline:
                return None
            verts = [_point(v.dxf.location) for v in entity.vertices]
            return [DxfEntity(
                type=EntityType.LWPOLYLINE, layer=layer,
                vertices=verts, closed=bool(entity.is_closed),
            )]

        if dxftype == "CIRCLE":
            return [DxfEntity(
                type=EntityType.CIRCLE, layer=layer,
                center=_point(entity.dxf.center), radius=float(entity.dxf.radius),
            )]

        if dxftype == "ARC":
            return [DxfEntity(
                type=EntityType.ARC, layer=layer,
                center=_point(entity.dxf.center), radius=float(entity.dxf.radius),
                start_angle=float(entity.dxf.start_angle), end_angle=float(entity.dxf.end_angle),
            )]

        if dxftype in ("TEXT", "ATTRIB"):
            end = None
            if entity.dxf.hasattr("align_point"):
                end = _point(entity.dxf.align_point)
            return [DxfEntity(
                type=EntityType.TEXT if dxftype == "TEXT" else EntityType.ATTRIB,
                layer=layer,
                start=_point(entity.dxf.insert), end=end,
                text=entity.dxf.text, height=float(entity.dxf.height),
                rotation=float(entity.dxf.rotation),
            )]

        if dxftype == "MTEXT":
            return [DxfEntity(
                type=EntityType.MTEXT, layer=layer,
                start=_point(entity.dxf.insert),
                text=entity.plain_text(), height=float(entity.dxf.char_height),
                rotation=float(entity.get_rotation()),
            )]

        if dxftype == "DIMENSION":
            return [DxfEntity(
                type=EntityType.DIMENSION, layer=layer,
                start=_point(entity.dxf.text_midpoint) if entity.dxf.hasattr("text_midpoint") else None,
                end=_point(entity.dxf.defpoint),
                measure_start=_point(entity.dxf.defpoint2) if entity.dxf.hasattr("defpoint2") else None,
                measure_end=_point(entity.dxf.defpoint3) if entity.dxf.hasattr("defpoint3") else None,
                text=entity.dxf.text if entity.dxf.hasattr("text") else None,
            )]

        if dxftype == "INSERT":
            insert = DxfEntity(
                type=EntityType.INSERT, layer=layer,
                block_name=entity.dxf.name,
                start=_point(entity.dxf.insert),
                scale=Point2D(x=float(entity.dxf.xscale), y=float(entity.dxf.yscale)),
                rotation=float(entity.dxf.rotation),
                row_count=int(entity.dxf.row_count),
                column_count=int(entity.dxf.column_count),
                row_spacing=float(entity.dxf.row_spacing),
                column_spacing=float(entity.dxf.column_spacing),
            )
            attribs = [self._convert_entity(a)[0] for a in entity.attribs]
            return [insert] + attribs

        return None


def parse_dxf(file_path: str) -> DxfData:
    """
    Parse a DXF file into the core entity model.

    Args:
        file_path: Path to DXF file

    Returns:
        DxfData

    Raises:
        FileNotFoundError: If file doesn't exist
        ezdxf.DXFStructureError: If file is not valid DXF
    """
    return DXFParser(file_path).parse()

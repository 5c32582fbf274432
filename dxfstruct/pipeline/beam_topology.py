"""
Beam step 4: topology merge.

Resolves every junction by deciding which beam runs through and which ones
stop at its face. The losing beams are cut at the junction box; what is left
are the measurable beam instances.
"""

import re
from typing import Callable, List, Optional, Tuple
from loguru import logger

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady, stage_guard
from dxfstruct.core.geometry import OBB, entity_bounds, rectangle_entity, round_half_up
from dxfstruct.core.models import (
    BeamIntersectionInfo,
    BeamStep4TopologyInfo,
    Bounds,
    DxfEntity,
    EntityType,
    ProjectState,
)
from dxfstruct.core.results import BeamTopologyResult
from dxfstruct.pipeline.beam_common import (
    COLUMN_RESULT_LAYER,
    INTERSECTION_LAYER,
    STEP3_LAYER,
    STEP4_ERROR_LAYER,
    STEP4_LAYER,
)


_MAIN_BEAM = re.compile(r"^(WKL|KL|LL|XL)")
_SPAN_NUMBER = re.compile(r"(\d+)")


def parse_span(span: Optional[str]) -> int:
    """Number of spans in a span tag such as "2" or "(3A)"; 1 when absent."""
    if not span:
        return 1
    match = _SPAN_NUMBER.search(span)
    return int(match.group(1)) if match else 1


def get_code_priority(code: Optional[str]) -> int:
    """2 for frame/main beams (WKL, KL, LL, XL), 1 for secondary L beams, else 0."""
    if not code:
        return 0
    c = code.upper()
    if _MAIN_BEAM.match(c):
        return 2
    if c.startswith("L"):
        return 1
    return 0


class Fragment:
    """A piece of a step-3 beam that is still being cut."""

    def __init__(self, id: str, source_index: int, obb: OBB, code: str,
                 span: int, width: float, height: float):
        self.id = id
        self.source_index = source_index
        self.obb = obb
        self.code = code
        self.span = span
        self.width = width
        self.height = height
        self.priority = get_code_priority(code)

    def is_horizontal(self) -> bool:
        angle = abs(self.obb.angle()) % 180
        return angle < 45 or angle > 135

    def overlaps(self, box: Bounds) -> bool:
        """Separating-axis test between the fragment and a junction box."""
        own = entity_bounds(self.obb.entity)
        if own is None or not own.overlaps(box):
            return False

        projected = [self.obb.project(p) for p in box.corners()]
        us = [p[0] for p in projected]
        vs = [p[1] for p in projected]
        if max(us) < self.obb.min_t or min(us) > self.obb.max_t:
            return False
        if max(vs) < -self.obb.half_width or min(vs) > self.obb.half_width:
            return False
        return True

    def _piece(self, start: float, end: float, suffix: str, min_length: float) -> Optional["Fragment"]:
        if end - start < min_length:
            return None
        obb = OBB.from_polygon(self.obb.to_polygon(STEP4_LAYER, start, end))
        if obb is None:
            return None
        return Fragment(self.id + suffix, self.source_index, obb, self.code, self.span, self.width, self.height)

    def cut(self, box: Bounds, min_length: float = 50) -> List["Fragment"]:
        """
        Remove the part of the fragment that lies inside a junction box.

        Returns:
            The remaining pieces (the fragment itself when the box misses it,
            nothing when the box swallows it)
        """
        ts = [self.obb.project(p)[0] for p in box.corners()]
        start = max(self.obb.min_t, min(ts))
        end = min(self.obb.max_t, max(ts))
        if start >= end:
            return [self]

        lo, hi = self.obb.min_t, self.obb.max_t
        cuts_head = start > lo + 10
        cuts_tail = end < hi - 10

        if cuts_head and cuts_tail:
            pieces = [self._piece(lo, start, "-A", min_length), self._piece(end, hi, "-B", min_length)]
        elif cuts_tail:
            pieces = [self._piece(end, hi, "-T", min_length)]
        elif cuts_head:
            pieces = [self._piece(lo, start, "-H", min_length)]
        else:
            pieces = []
        return [p for p in pieces if p is not None]


class _Junction:
    def __init__(self, info: BeamIntersectionInfo):
        self.info = info
        self.resolved = False

    def is_head_horizontal(self) -> bool:
        angle = self.info.angle or 0
        return abs(angle) < 10 or abs(angle - 180) < 10

    def stems(self, frags: List[Fragment]) -> List[Fragment]:
        head_horizontal = self.is_head_horizontal()
        return [f for f in frags if f.is_horizontal() != head_horizontal]


Decision = Tuple[List[str], bool]


class TopologyResolver:
    """
    Cuts fragments at junctions in successive rule passes.

    Each pass visits the unresolved junctions, asks a rule which fragments
    to cut and whether the junction is settled. A junction touched by fewer
    than two fragments is settled automatically.
    """

    def __init__(self, fragments: List[Fragment], junctions: List[BeamIntersectionInfo],
                 min_length: float = 50):
        self.fragments = fragments
        self.junctions = [_Junction(j) for j in junctions]
        self.span_errors: List[_Junction] = []
        self.min_length = min_length

    def run_pass(self, rule: Callable[[_Junction, List[Fragment]], Decision]) -> None:
        for junction in self.junctions:
            if junction.resolved:
                continue
            box = junction.info.bounds
            active = [f for f in self.fragments if f.overlaps(box)]
            if len(active) < 2:
                junction.resolved = True
                continue

            cut_ids, resolved = rule(junction, active)
            if cut_ids:
                victims = set(cut_ids)
                kept = [f for f in self.fragments if f.id not in victims]
                for f in self.fragments:
                    if f.id in victims:
                        kept.extend(f.cut(box, self.min_length))
                self.fragments = kept
            if resolved:
                junction.resolved = True

    def span_rule(self, junction: _Junction, frags: List[Fragment]) -> Decision:
        """Single-span beams end at a T head or pass through a cross."""
        if junction.info.junction == "T":
            head = [f for f in frags if f not in junction.stems(frags)]
            if any(h.span == 1 for h in head):
                return [s.id for s in junction.stems(frags)], True
            return [], False

        if junction.info.junction == "C":
            single = [f for f in frags if f.span == 1]
            others = [f for f in frags if f.span != 1]
            if single and others:
                return [f.id for f in others], True
            if single:
                self.span_errors.append(junction)
                return [], True
        return [], False

    @staticmethod
    def _dominant(frags: List[Fragment], key: Callable[[Fragment], float], margin: float) -> Decision:
        ordered = sorted(frags, key=key, reverse=True)
        top = key(ordered[0])
        cut_ids = [f.id for f in ordered[1:] if top - key(f) > margin]
        return cut_ids, len(frags) - len(cut_ids) == 1

    def width_rule(self, junction: _Junction, frags: List[Fragment]) -> Decision:
        return self._dominant(frags, lambda f: f.width, 10)

    def height_rule(self, junction: _Junction, frags: List[Fragment]) -> Decision:
        return self._dominant(frags, lambda f: f.height, 10)

    def priority_rule(self, junction: _Junction, frags: List[Fragment]) -> Decision:
        top = max(f.priority for f in frags)
        cut_ids = [f.id for f in frags if f.priority < top]
        return cut_ids, len(frags) - len(cut_ids) == 1

    def strong_span_pass(self, attempts: int = 3) -> None:
        """
        Let beams whose code already occurs as often as their span count win.

        Repeats while a pass still cuts something, at most ``attempts`` times.
        """
        for _ in range(attempts):
            counts = {}
            for f in self.fragments:
                if f.code:
                    counts[f.code] = counts.get(f.code, 0) + 1
            changed = []

            def rule(junction: _Junction, frags: List[Fragment]) -> Decision:
                satisfied = [f for f in frags if counts.get(f.code, 0) >= f.span]
                if satisfied and len(satisfied) < len(frags):
                    keep = {f.id for f in satisfied}
                    cut_ids = [f.id for f in frags if f.id not in keep]
                    changed.append(bool(cut_ids))
                    return cut_ids, True
                if satisfied and junction.info.junction == "T":
                    stems = junction.stems(frags)
                    if stems:
                        changed.append(True)
                        return [s.id for s in stems], True
                return [], False

            self.run_pass(rule)
            if not any(changed):
                break

    def resolve(self, attempts: int = 3) -> List[Fragment]:
        self.run_pass(self.span_rule)
        self.run_pass(self.width_rule)
        self.run_pass(self.height_rule)
        self.run_pass(self.priority_rule)
        self.strong_span_pass(attempts)
        return self.fragments

    def unresolved(self) -> List[_Junction]:
        return [j for j in self.junctions if not j.resolved]


def _fmt(value: float) -> str:
    return f"{value:g}"


def _error_box(info: BeamIntersectionInfo, text: str) -> List[DxfEntity]:
    return [
        rectangle_entity(info.vertices or info.bounds.corners(), STEP4_ERROR_LAYER),
        DxfEntity(type=EntityType.TEXT, layer=STEP4_ERROR_LAYER,
                  start=info.bounds.center(), text=text, height=150),
    ]


@stage_guard("BEAM_TOPOLOGY")
def calculate_beam_topology_merge(
    project: ProjectState,
    other_projects: Optional[List[ProjectState]] = None,
    config: Optional[Config] = None,
) -> BeamTopologyResult:
    """
    Cut attributed beams at junctions into final beam instances.

    Junctions are settled by, in order: the span rule, width, height, code
    priority and the strong-span rule. Fragments keep the attributes of
    the step-3 beam they come from.

    Args:
        project: Project with step-3 attribute infos
        other_projects: Unused; accepted so every beam stage has one signature
        config: Threshold source (defaults to the packaged config)

    Returns:
        BeamTopologyResult with instances on BEAM_STEP4_LOGIC and markers
        (UNK, ERR-SPAN1, CHK) on BEAM_STEP4_ERRORS
    """
    config = config or get_default_config()
    logger.info(f"Beam step 4 (topology) for {project.name}")

    infos = project.beam_step3_attr_infos
    if not infos:
        raise StageNotReady("BEAM_TOPOLOGY", "Missing Step 3 attribute data. Run Attribute Mounting first")
    if not project.beam_step2_geo_infos:
        raise StageNotReady("BEAM_TOPOLOGY", "Missing Step 2 data. Run Intersection Processing first")

    min_length = config.get_classification_rule("beam_topology", "min_fragment_length_mm", 50)
    attempts = config.get_classification_rule("beam_topology", "strong_span_attempts", 3)

    fragments: List[Fragment] = []
    unknown: List[Fragment] = []
    for idx, info in enumerate(infos):
        if len(info.vertices) < 4:
            continue
        obb = OBB.from_polygon(rectangle_entity(info.vertices, STEP4_LAYER))
        if obb is None:
            continue
        code = info.code if info.code and info.code != "UNKNOWN" else ""
        frag = Fragment(f"F-{idx}", info.beam_index, obb, code, parse_span(info.span), info.width, info.height)
        fragments.append(frag)
        if not code:
            unknown.append(frag)

    resolver = TopologyResolver(fragments, project.beam_step2_inter_infos or [], min_length)
    fragments = resolver.resolve(attempts)

    entities: List[DxfEntity] = []
    labels: List[DxfEntity] = []
    topo_infos: List[BeamStep4TopologyInfo] = []
    for n, frag in enumerate(fragments, start=1):
        poly = frag.obb.entity.with_layer(STEP4_LAYER)
        entities.append(poly)

        angle = frag.obb.angle()
        text_angle = angle + 180 if angle > 90 or angle < -90 else angle
        if text_angle > 180:
            text_angle -= 360

        length = round_half_up(frag.obb.half_len * 2)
        labels.append(DxfEntity(
            type=EntityType.TEXT, layer=STEP4_LAYER, start=frag.obb.center,
            text=f"{n} {frag.code or '?'}\n{length}x{_fmt(frag.width)}x{_fmt(frag.height)}",
            height=150, rotation=text_angle,
        ))
        topo_infos.append(BeamStep4TopologyInfo(
            id=f"TOPO-{n}",
            layer=STEP4_LAYER,
            vertices=list(poly.vertices),
            bounds=entity_bounds(poly),
            center=frag.obb.center,
            angle=angle,
            beam_index=n,
            parent_beam_index=frag.source_index,
            code=frag.code,
            span=f"({frag.span})" if frag.span > 1 else None,
            width=frag.width,
            height=frag.height,
            length=length,
            volume=length * frag.width * frag.height,
        ))

    errors: List[DxfEntity] = []
    for frag in unknown:
        errors.append(DxfEntity(type=EntityType.CIRCLE, layer=STEP4_ERROR_LAYER, center=frag.obb.center, radius=300))
        errors.append(DxfEntity(type=EntityType.TEXT, layer=STEP4_ERROR_LAYER,
                                start=frag.obb.center, text="UNK", height=150, rotation=0.0))
    for junction in resolver.span_errors:
        errors.extend(_error_box(junction.info, "ERR-SPAN1"))
    unresolved = resolver.unresolved()
    for junction in unresolved:
        errors.extend(_error_box(junction.info, "CHK"))

    message = (
        f"Step 4 Complete. Fragments: {len(fragments)}. Unresolved: {len(unresolved)}. "
        f"CrossErrors: {len(resolver.span_errors)}. Unknowns: {len(unknown)}"
    )
    if unresolved or resolver.span_errors or unknown:
        logger.warning(message)
    else:
        logger.success(message)

    return BeamTopologyResult(
        stage="BEAM_TOPOLOGY",
        result_layers=[STEP4_LAYER, STEP4_ERROR_LAYER],
        entities=entities + labels + errors,
        infos=topo_infos,
        error_count=len(unknown) + len(resolver.span_errors) + len(unresolved),
        context_layers=["AXIS", COLUMN_RESULT_LAYER],
        layers_to_hide=[STEP3_LAYER, INTERSECTION_LAYER],
        message=message,
    )

# core/common_types.py
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .utils import format_layer_range, round_height

Point = Tuple[int, int]

# --- Severity / Status Enums ---

class DFMStatus(str, Enum):
    """Overall detection result status."""
    PASS = "Pass"
    WARNING = "Warning"
    FAIL = "Fail"

class DFMLevel(str, Enum):
    """Severity level of a detected issue."""
    INFO = "Info"          # Worth knowing, prints fine (e.g., leading empty layers)
    WARN = "Warning"       # Printable, but likely to leave defects
    ERROR = "Error"        # Likely print failure where the issue sits
    CRITICAL = "Critical"  # Job cannot be printed as is

class IssueType(str, Enum):
    """Kinds of layer defects. Declaration order is the report sort order."""
    ISLAND = "Island"
    OVERHANG = "Overhang"
    RESIN_TRAP = "Resin trap"
    SUCTION_CUP = "Suction cup"
    TOUCHING_BOUND = "Touching bound"
    PRINT_HEIGHT = "Print height"
    EMPTY_LAYER = "Empty layer"

    @property
    def order(self) -> int:
        return list(IssueType).index(self)

class EmptyLayerKind(str, Enum):
    STARTING = "Starting"
    LOOSE = "Loose"
    ENDING = "Ending"

ISSUE_LEVELS: Dict[IssueType, DFMLevel] = {
    IssueType.ISLAND: DFMLevel.ERROR,
    IssueType.OVERHANG: DFMLevel.WARN,
    IssueType.RESIN_TRAP: DFMLevel.ERROR,
    IssueType.SUCTION_CUP: DFMLevel.WARN,
    IssueType.TOUCHING_BOUND: DFMLevel.WARN,
    IssueType.PRINT_HEIGHT: DFMLevel.CRITICAL,
    IssueType.EMPTY_LAYER: DFMLevel.INFO,
}

ISSUE_RECOMMENDATIONS: Dict[IssueType, str] = {
    IssueType.ISLAND: "Add supports under the island.",
    IssueType.OVERHANG: "Add supports or reorient the model to reduce the overhang.",
    IssueType.RESIN_TRAP: "Add a drain hole so uncured resin can escape the enclosed volume.",
    IssueType.SUCTION_CUP: "Drill a vent hole to break the vacuum during peel.",
    IssueType.TOUCHING_BOUND: "Move or scale the model away from the build area edge.",
    IssueType.PRINT_HEIGHT: "Scale, split or reorient the model to fit the machine Z.",
    IssueType.EMPTY_LAYER: "Remove the empty layer(s) or check the slicing settings.",
}

# --- Geometry Models ---

class Rectangle(BaseModel):
    """Axis aligned integer rectangle in pixel space."""
    model_config = ConfigDict(frozen=True)

    x: int = 0
    y: int = 0
    width: int = Field(0, ge=0)
    height: int = Field(0, ge=0)

    @classmethod
    def from_xywh(cls, values: Sequence[int]) -> "Rectangle":
        x, y, w, h = (int(v) for v in values)
        return cls(x=x, y=y, width=w, height=h)

    @classmethod
    def from_bounds(cls, min_x: int, min_y: int, max_x: int, max_y: int) -> "Rectangle":
        """Rectangle covering the inclusive pixel bounds."""
        return cls(x=int(min_x), y=int(min_y), width=int(max_x - min_x + 1), height=int(max_y - min_y + 1))

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def location(self) -> Point:
        return (self.x, self.y)

    def union(self, other: "Rectangle") -> "Rectangle":
        if self.is_empty:
            return other
        if other.is_empty:
            return self
        x = min(self.x, other.x); y = min(self.y, other.y)
        return Rectangle(x=x, y=y, width=max(self.right, other.right) - x, height=max(self.bottom, other.bottom) - y)

    def intersect(self, other: "Rectangle") -> "Rectangle":
        x = max(self.x, other.x); y = max(self.y, other.y)
        right = min(self.right, other.right); bottom = min(self.bottom, other.bottom)
        if right <= x or bottom <= y:
            return Rectangle()
        return Rectangle(x=x, y=y, width=right - x, height=bottom - y)

    def intersects_with(self, other: "Rectangle") -> bool:
        return not self.intersect(other).is_empty

    def contains(self, point: Point) -> bool:
        return self.x <= point[0] < self.right and self.y <= point[1] < self.bottom

    def offset_by(self, dx: int, dy: int) -> "Rectangle":
        return Rectangle(x=self.x + dx, y=self.y + dy, width=self.width, height=self.height)

    def as_slices(self) -> Tuple[slice, slice]:
        """(rows, columns) slices for indexing a numpy raster."""
        return slice(self.y, self.bottom), slice(self.x, self.right)

    def __str__(self) -> str:
        return f"{{X={self.x},Y={self.y},Width={self.width},Height={self.height}}}"


def union_rectangles(rectangles: Iterable[Rectangle]) -> Rectangle:
    result = Rectangle()
    for rectangle in rectangles:
        result = result.union(rectangle)
    return result

# --- Issue Models ---

class LayerIssue(BaseModel):
    """A defect found on a single layer."""
    issue_type: IssueType = Field(..., description="Category of the issue.")
    layer_index: int = Field(..., ge=0, description="Index of the layer owning the issue.")
    position_z: float = Field(..., description="Layer Z position in mm.")
    layer_height: float = Field(..., description="Layer height in mm.")
    bounding_rectangle: Rectangle = Field(default_factory=Rectangle)
    area: float = Field(0.0, ge=0, description="Pixel count for point issues, geometric area for contour issues.")
    pixel_count: int = Field(0, ge=0)
    points: Optional[List[Point]] = Field(None, description="Affected pixels, for point-set issues.")
    contours: Optional[List[List[Point]]] = Field(None, description="Outer boundary followed by its holes, for contour issues.")

    @classmethod
    def from_layer(cls, issue_type: IssueType, layer) -> "LayerIssue":
        return cls(
            issue_type=issue_type, layer_index=layer.index, position_z=layer.position_z,
            layer_height=layer.layer_height, bounding_rectangle=layer.bounding_rectangle,
            area=float(layer.non_zero_pixel_count), pixel_count=layer.non_zero_pixel_count,
        )

    @classmethod
    def from_points(cls, issue_type: IssueType, layer, points: Sequence[Point],
                    bounding_rectangle: Optional[Rectangle] = None) -> "LayerIssue":
        points = [(int(x), int(y)) for x, y in points]
        if bounding_rectangle is None and points:
            xs = [p[0] for p in points]; ys = [p[1] for p in points]
            bounding_rectangle = Rectangle.from_bounds(min(xs), min(ys), max(xs), max(ys))
        return cls(
            issue_type=issue_type, layer_index=layer.index, position_z=layer.position_z,
            layer_height=layer.layer_height, bounding_rectangle=bounding_rectangle or Rectangle(),
            area=float(len(points)), pixel_count=len(points), points=points,
        )

    @classmethod
    def from_contours(cls, issue_type: IssueType, layer, contours: List[List[Point]],
                      bounding_rectangle: Rectangle, area: float, pixel_count: int = 0) -> "LayerIssue":
        return cls(
            issue_type=issue_type, layer_index=layer.index, position_z=layer.position_z,
            layer_height=layer.layer_height, bounding_rectangle=bounding_rectangle,
            area=max(0.0, float(area)), pixel_count=pixel_count, contours=contours,
        )


class AggregateIssue(BaseModel):
    """Same-type layer issues spanning a contiguous run of layers."""
    issue_type: IssueType = Field(..., description="Category of the issue.")
    level: DFMLevel = Field(..., description="Severity of the issue.")
    message: str = Field(..., description="Human-readable description of the issue.")
    recommendation: Optional[str] = Field(None, description="Suggestion on how to fix the issue.")
    issues: List[LayerIssue] = Field(..., min_length=1, description="Per-layer issues, sorted by layer.")
    bounding_rectangle: Rectangle
    area: float = Field(..., ge=0, description="Pixels for single-layer issues, pixel volume otherwise.")
    pixel_count: int = Field(0, ge=0)
    start_layer_index: int
    end_layer_index: int
    total_height: float = Field(..., description="Height in mm covered by the issue.")
    details: Dict[str, Any] = Field(default_factory=dict, description="Additional details (e.g., empty layer kind).")

    @classmethod
    def from_issues(cls, issue_type: IssueType, issues: Iterable[LayerIssue], pixels_per_millimeter: float = 1.0,
                    details: Optional[Dict[str, Any]] = None) -> "AggregateIssue":
        """
        Builds an aggregate from its per-layer issues.

        Args:
            issue_type: Type shared by all the issues.
            issues: Per-layer issues, in any order.
            pixels_per_millimeter: Converts layer heights to pixels so multi-layer areas become pixel volumes.
            details: Extra data to attach.

        Returns:
            The aggregate issue, with children sorted by layer index.
        """
        children = sorted(issues, key=lambda issue: issue.layer_index)
        if not children:
            raise ValueError("An aggregate issue needs at least one layer issue.")
        first = children[0]; last = children[-1]

        if len(children) == 1:
            area = first.area
        else:
            area = round(sum(child.area * child.layer_height * pixels_per_millimeter for child in children), 3)

        total_height = round_height(first.layer_height + last.position_z - first.position_z)
        layers = format_layer_range(first.layer_index, last.layer_index)
        return cls(
            issue_type=issue_type,
            level=ISSUE_LEVELS[issue_type],
            message=f"{issue_type.value} on layer(s) {layers}, area {area:g} px, height {total_height:g} mm.",
            recommendation=ISSUE_RECOMMENDATIONS[issue_type],
            issues=children,
            bounding_rectangle=union_rectangles(child.bounding_rectangle for child in children),
            area=area,
            pixel_count=sum(child.pixel_count for child in children),
            start_layer_index=first.layer_index,
            end_layer_index=last.layer_index,
            total_height=total_height,
            details=details or {},
        )

    @property
    def first_issue(self) -> LayerIssue:
        return self.issues[0]

    @property
    def layers(self) -> str:
        return format_layer_range(self.start_layer_index, self.end_layer_index)


def sort_issues(issues: Iterable[AggregateIssue], by_area: bool = False) -> List[AggregateIssue]:
    """Type order ascending, start layer ascending, area descending. `by_area` puts area first."""
    if by_area:
        return sorted(issues, key=lambda i: (-i.area, i.issue_type.order, i.start_layer_index))
    return sorted(issues, key=lambda i: (i.issue_type.order, i.start_layer_index, -i.area))


def determine_status(issues: Iterable[AggregateIssue]) -> DFMStatus:
    """Overall status from the highest issue severity."""
    levels = {issue.level for issue in issues}
    if DFMLevel.CRITICAL in levels or DFMLevel.ERROR in levels:
        return DFMStatus.FAIL
    if DFMLevel.WARN in levels:
        return DFMStatus.WARNING
    return DFMStatus.PASS


class DetectionReport(BaseModel):
    """Result of a detection run over a layer stack."""
    status: DFMStatus
    issues: List[AggregateIssue] = Field(default_factory=list)
    layer_count: int = Field(0, ge=0)
    ignored_count: int = Field(0, ge=0)
    cancelled: bool = Field(False, description="True when the run was cancelled and the issues are partial.")
    analysis_time_sec: float = Field(0.0, ge=0)

    def count_by_type(self) -> Dict[IssueType, int]:
        counts: Dict[IssueType, int] = {}
        for issue in self.issues:
            counts[issue.issue_type] = counts.get(issue.issue_type, 0) + 1
        return counts


class PixelDrainHole(BaseModel):
    """Request to drill a vertical drain hole starting at a layer."""
    layer_index: int = Field(..., ge=0)
    location: Point
    diameter: int = Field(..., gt=0, description="Hole diameter in pixels.")

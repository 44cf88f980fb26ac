# core/geometry.py
import logging
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np

from .common_types import Point, Rectangle
from .raster import WHITE, BLACK, Raster

logger = logging.getLogger(__name__)


class Contour:
    """Closed integer polygon as returned by OpenCV (N x 1 x 2 int32)."""
    __slots__ = ("points", "_bounding_rectangle", "_area", "_moments")

    def __init__(self, points: np.ndarray):
        self.points = np.asarray(points, dtype=np.int32).reshape(-1, 1, 2)
        self._bounding_rectangle: Optional[Rectangle] = None
        self._area: Optional[float] = None
        self._moments: Optional[Dict[str, float]] = None

    @classmethod
    def from_points(cls, points: Sequence[Point]) -> "Contour":
        return cls(np.array(points, dtype=np.int32))

    def __len__(self) -> int:
        return len(self.points)

    @property
    def bounding_rectangle(self) -> Rectangle:
        if self._bounding_rectangle is None:
            self._bounding_rectangle = Rectangle.from_xywh(cv2.boundingRect(self.points))
        return self._bounding_rectangle

    @property
    def area(self) -> float:
        if self._area is None:
            self._area = abs(float(cv2.contourArea(self.points)))
        return self._area

    @property
    def perimeter(self) -> float:
        return float(cv2.arcLength(self.points, True))

    @property
    def moments(self) -> Dict[str, float]:
        if self._moments is None:
            self._moments = cv2.moments(self.points)
        return self._moments

    @property
    def centroid(self) -> Optional[Point]:
        """Centre of mass, None for degenerate (zero area) polygons."""
        m = self.moments
        if m["m00"] == 0:
            return None
        return (int(round(m["m10"] / m["m00"])), int(round(m["m01"] / m["m00"])))

    def offset(self, dx: int, dy: int) -> "Contour":
        return Contour(self.points + np.array([dx, dy], dtype=np.int32))

    def to_points(self) -> List[Point]:
        return [(int(x), int(y)) for x, y in self.points.reshape(-1, 2)]


class ContourGroup:
    """
    An outer boundary followed by its direct children (holes of the outer boundary).

    Groups are compared by identity: each one is a distinct region found on a layer.
    """
    __slots__ = ("contours", "_area")

    def __init__(self, contours: Sequence[Contour]):
        if not contours:
            raise ValueError("A contour group needs at least its outer contour.")
        self.contours = list(contours)
        self._area: Optional[float] = None

    @classmethod
    def from_point_lists(cls, point_lists: Sequence[Sequence[Point]]) -> "ContourGroup":
        return cls([Contour.from_points(points) for points in point_lists])

    @property
    def outer(self) -> Contour:
        return self.contours[0]

    @property
    def children(self) -> List[Contour]:
        return self.contours[1:]

    @property
    def bounding_rectangle(self) -> Rectangle:
        return self.outer.bounding_rectangle

    @property
    def area(self) -> float:
        """Outer area minus the areas of its children."""
        if self._area is None:
            self._area = max(0.0, self.outer.area - sum(child.area for child in self.children))
        return self._area

    @property
    def centroid(self) -> Optional[Point]:
        return self.outer.centroid

    def offset(self, dx: int, dy: int) -> "ContourGroup":
        return ContourGroup([contour.offset(dx, dy) for contour in self.contours])

    def to_point_lists(self) -> List[List[Point]]:
        return [contour.to_points() for contour in self.contours]

    def draw(self, raster: Raster, value: int = WHITE, offset: Point = (0, 0)) -> Raster:
        """Fills the region (outer minus children) into `raster` with `value`."""
        raster.draw_contours([self.outer.points], value, offset)
        if len(self.contours) > 1:
            background = BLACK if value != BLACK else WHITE
            raster.draw_contours([child.points for child in self.children], background, offset)
        return raster

    def rasterize(self, rectangle: Optional[Rectangle] = None) -> Raster:
        """Mask of the region on a canvas covering `rectangle` (defaults to the bounding rectangle)."""
        rectangle = rectangle or self.bounding_rectangle
        canvas = Raster.zeros(rectangle.width, rectangle.height)
        return self.draw(canvas, WHITE, (-rectangle.x, -rectangle.y))

    def pixel_count(self) -> int:
        return self.rasterize().count_nonzero()


def contours_intersect(first: ContourGroup, second: ContourGroup) -> bool:
    """True when the two regions share at least one pixel."""
    overlap = first.bounding_rectangle.intersect(second.bounding_rectangle)
    if overlap.is_empty:
        return False
    return first.rasterize(overlap).bitwise_and(second.rasterize(overlap)).has_nonzero()


class ContourHierarchy:
    """
    Contours of a raster with their tree structure held as parallel arrays.

    `parents[i]` is the index of the contour enclosing contour i (-1 for top level) and
    `depths[i]` its nesting depth: even depths are solid boundaries, odd depths are holes.
    """

    def __init__(self, contours: Sequence[np.ndarray], hierarchy: np.ndarray):
        self.contours = [Contour(points) for points in contours]
        self.parents = np.asarray(hierarchy[:, 3], dtype=np.int32) if len(self.contours) else np.empty(0, np.int32)
        self.depths = self._compute_depths(self.parents)

    @classmethod
    def from_raster(cls, raster: Raster, offset: Point = (0, 0)) -> "ContourHierarchy":
        contours, hierarchy = raster.find_contours(offset)
        return cls(contours, hierarchy)

    @staticmethod
    def _compute_depths(parents: np.ndarray) -> np.ndarray:
        depths = np.full(len(parents), -1, dtype=np.int32)
        for i in range(len(parents)):
            chain = []
            j = i
            while j != -1 and depths[j] == -1:
                chain.append(j)
                j = parents[j]
            depth = -1 if j == -1 else depths[j]
            for k in reversed(chain):
                depth += 1
                depths[k] = depth
        return depths

    def __len__(self) -> int:
        return len(self.contours)

    def external_contours(self) -> List[Contour]:
        return [contour for contour, parent in zip(self.contours, self.parents) if parent == -1]

    def _groups(self, parity: int) -> List[ContourGroup]:
        children: Dict[int, List[Contour]] = {}
        for i, parent in enumerate(self.parents):
            if parent != -1:
                children.setdefault(int(parent), []).append(self.contours[i])
        return [
            ContourGroup([self.contours[i]] + children.get(i, []))
            for i in range(len(self.contours)) if self.depths[i] % 2 == parity
        ]

    def positive_groups(self) -> List[ContourGroup]:
        """Solid regions: each solid boundary with its holes."""
        return self._groups(0)

    def negative_groups(self) -> List[ContourGroup]:
        """Hollow regions: each hole with the solid islands directly inside it."""
        return self._groups(1)

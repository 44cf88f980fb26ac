# core/raster.py
import logging
from typing import NamedTuple, Optional, Sequence, Tuple

import cv2
import numpy as np

from .common_types import Point, Rectangle
from .exceptions import RasterProcessingError

logger = logging.getLogger(__name__)

WHITE = 255
BLACK = 0


class ConnectedComponents(NamedTuple):
    count: int               # includes the background label 0
    labels: np.ndarray       # int32 label per pixel
    stats: np.ndarray        # cv2 CC_STAT_* columns per label


class Raster:
    """
    Single channel 8-bit image (0 = empty, >0 = exposed).

    Every operation returns a new Raster unless `out` is given, in which case the
    result is written into `out` (which may be a region view of a larger raster).
    """
    __slots__ = ("data",)

    def __init__(self, data: np.ndarray):
        if data.ndim != 2:
            raise RasterProcessingError(f"Raster must be 2D, got shape {data.shape}")
        if data.dtype != np.uint8:
            data = data.astype(np.uint8)
        self.data = data

    @classmethod
    def zeros(cls, width: int, height: int) -> "Raster":
        return cls(np.zeros((height, width), dtype=np.uint8))

    def zeros_like(self) -> "Raster":
        return Raster(np.zeros_like(self.data))

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def rectangle(self) -> Rectangle:
        return Rectangle(x=0, y=0, width=self.width, height=self.height)

    def copy(self) -> "Raster":
        return Raster(self.data.copy())

    def roi(self, rectangle: Rectangle) -> "Raster":
        """View of a region, writes through to this raster."""
        rows, cols = rectangle.intersect(self.rectangle).as_slices()
        return Raster(self.data[rows, cols])

    # --- Pixel arithmetic ---

    def _store(self, result: np.ndarray, out: Optional["Raster"]) -> "Raster":
        if out is None:
            return Raster(result)
        out.data[...] = result
        return out

    def _check_same_size(self, other: "Raster") -> None:
        if self.data.shape != other.data.shape:
            raise RasterProcessingError(f"Raster size mismatch: {self.data.shape} vs {other.data.shape}")

    def bitwise_and(self, other: "Raster", out: Optional["Raster"] = None) -> "Raster":
        self._check_same_size(other)
        return self._store(cv2.bitwise_and(self.data, other.data), out)

    def bitwise_or(self, other: "Raster", out: Optional["Raster"] = None) -> "Raster":
        self._check_same_size(other)
        return self._store(cv2.bitwise_or(self.data, other.data), out)

    def subtract(self, other: "Raster", out: Optional["Raster"] = None) -> "Raster":
        """Saturating subtraction."""
        self._check_same_size(other)
        return self._store(cv2.subtract(self.data, other.data), out)

    def bitwise_not(self, out: Optional["Raster"] = None) -> "Raster":
        return self._store(cv2.bitwise_not(self.data), out)

    def threshold(self, value: int, max_value: int = WHITE) -> "Raster":
        """Pixels strictly above `value` become `max_value`, the rest 0."""
        _, result = cv2.threshold(self.data, value, max_value, cv2.THRESH_BINARY)
        return Raster(result)

    def erode(self, kernel: np.ndarray, iterations: int = 1) -> "Raster":
        if iterations <= 0:
            return self.copy()
        result = cv2.erode(self.data, kernel, iterations=iterations,
                           borderType=cv2.BORDER_CONSTANT, borderValue=0)
        return Raster(result)

    # --- Analysis ---

    def count_nonzero(self) -> int:
        return int(cv2.countNonZero(self.data))

    def has_nonzero(self) -> bool:
        return bool(self.data.any())

    def bounding_rectangle(self) -> Rectangle:
        """Bounding rectangle of the non-zero pixels, empty if there are none."""
        points = cv2.findNonZero(self.data)
        if points is None:
            return Rectangle()
        return Rectangle.from_xywh(cv2.boundingRect(points))

    def connected_components(self, connectivity: int = 4) -> ConnectedComponents:
        count, labels, stats, _ = cv2.connectedComponentsWithStats(self.data, connectivity=connectivity)
        return ConnectedComponents(count=count, labels=labels, stats=stats)

    def find_contours(self, offset: Point = (0, 0)) -> Tuple[Sequence[np.ndarray], np.ndarray]:
        """Contours and their hierarchy (RETR_TREE), shifted by `offset`."""
        data = self.data
        if not data.flags.c_contiguous or not data.flags.writeable:
            data = np.ascontiguousarray(data).copy()
        contours, hierarchy = cv2.findContours(data, cv2.RETR_TREE, cv2.CHAIN_APPROX_SIMPLE, offset=offset)
        if hierarchy is None:
            return (), np.empty((0, 4), dtype=np.int32)
        return contours, hierarchy[0]

    # --- Drawing ---

    def draw_contours(self, contours: Sequence[np.ndarray], value: int = WHITE, offset: Point = (0, 0)) -> "Raster":
        """Fills each contour with `value`, in place."""
        if len(contours):
            self._draw(lambda canvas: cv2.drawContours(canvas, list(contours), -1, int(value), cv2.FILLED,
                                                       cv2.LINE_8, offset=offset))
        return self

    def draw_circle(self, center: Point, radius: int, value: int = WHITE) -> "Raster":
        """Fills a disc with `value`, in place."""
        self._draw(lambda canvas: cv2.circle(canvas, (int(center[0]), int(center[1])), int(radius), int(value),
                                             cv2.FILLED, cv2.LINE_8))
        return self

    def _draw(self, draw) -> None:
        if self.data.flags.c_contiguous and self.data.flags.writeable:
            draw(self.data)
        else:
            canvas = np.ascontiguousarray(self.data).copy()
            draw(canvas)
            self.data[...] = canvas


def cross_kernel() -> np.ndarray:
    """3x3 cross structuring element."""
    return cv2.getStructuringElement(cv2.MORPH_CROSS, (3, 3))

# core/layers.py
import logging
import re
import time
from enum import Enum
from pathlib import Path
from typing import Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .common_types import PixelDrainHole, Rectangle, union_rectangles
from .exceptions import FileFormatError, LayerStackError
from .progress import OperationProgress
from .raster import BLACK, Raster
from .utils import round_height

logger = logging.getLogger(__name__)

SUPPORTED_IMAGE_SUFFIXES = (".png", ".bmp", ".tif", ".tiff")


class DecodeType(str, Enum):
    """How much of the print file was decoded."""
    FULL = "Full"
    PARTIAL = "Partial"   # Headers only, layer images are not available


class LayerImage(NamedTuple):
    source: Raster            # Whole layer
    roi: Raster               # View of `source` limited to `roi_rectangle`
    roi_rectangle: Rectangle


class Layer:
    """One cross-section of the print. Its raster is read-only."""

    def __init__(self, index: int, position_z: float, layer_height: float,
                 data: Optional[np.ndarray] = None, exposure_time: float = 2.5):
        self.index = index
        self.position_z = round_height(position_z)
        self.layer_height = round_height(layer_height)
        self.exposure_time = exposure_time
        self.bounding_rectangle = Rectangle()
        self.non_zero_pixel_count = 0
        self._data: Optional[np.ndarray] = None
        if data is not None:
            self.set_data(data)

    def set_data(self, data: np.ndarray) -> None:
        """Replaces the raster and refreshes the derived metadata."""
        data = np.array(data, dtype=np.uint8, copy=True)
        if data.ndim != 2:
            raise LayerStackError(f"Layer {self.index} raster must be 2D, got shape {data.shape}")
        data.flags.writeable = False
        raster = Raster(data)
        self._data = data
        self.non_zero_pixel_count = raster.count_nonzero()
        self.bounding_rectangle = raster.bounding_rectangle()

    @property
    def is_decoded(self) -> bool:
        return self._data is not None

    @property
    def raster(self) -> Raster:
        if self._data is None:
            raise LayerStackError(f"Layer {self.index} image was not decoded.")
        return Raster(self._data)

    @property
    def is_empty(self) -> bool:
        return self.non_zero_pixel_count == 0

    @property
    def is_dummy(self) -> bool:
        """Placeholder layers some slicers emit: at most one lit pixel or no exposure."""
        return self.non_zero_pixel_count <= 1 or self.exposure_time <= 0.01

    def __repr__(self) -> str:
        return (f"Layer(index={self.index}, z={self.position_z}, height={self.layer_height}, "
                f"pixels={self.non_zero_pixel_count}, bounds={self.bounding_rectangle})")


class LayerStack:
    """
    Ordered layers of a sliced print plus the machine parameters the detectors need.

    Args:
        layers: Layers ordered by index.
        resolution: (width, height) of every layer raster in pixels.
        pixel_size_mm: Size of one pixel on the build plate.
        machine_z: Maximum printable height of the machine (0 = unknown).
        decode_type: Whether layer images are available.
    """

    def __init__(self, layers: Sequence[Layer], resolution: Tuple[int, int], pixel_size_mm: float = 0.05,
                 machine_z: float = 0.0, decode_type: DecodeType = DecodeType.FULL):
        if pixel_size_mm <= 0:
            raise LayerStackError(f"Pixel size must be positive, got {pixel_size_mm}")
        self.layers: List[Layer] = list(layers)
        self.resolution = resolution
        self.pixel_size_mm = pixel_size_mm
        self.machine_z = machine_z
        self.decode_type = decode_type
        self._bounding_rectangle: Optional[Rectangle] = None
        for i, layer in enumerate(self.layers):
            if layer.index != i:
                raise LayerStackError(f"Layer at position {i} has index {layer.index}")
            if layer.is_decoded and (layer.raster.width, layer.raster.height) != tuple(resolution):
                raise LayerStackError(
                    f"Layer {i} is {layer.raster.width}x{layer.raster.height}, expected {resolution[0]}x{resolution[1]}"
                )

    # --- Construction ---

    @classmethod
    def from_array(cls, volume: Union[np.ndarray, Sequence[np.ndarray]], layer_height: float = 0.05,
                   pixel_size_mm: float = 0.05, machine_z: float = 0.0, exposure_time: float = 2.5,
                   positions_z: Optional[Sequence[float]] = None,
                   decode_type: DecodeType = DecodeType.FULL) -> "LayerStack":
        """Builds a stack from a (layers, height, width) array or a sequence of 2D arrays."""
        images = [np.asarray(image) for image in volume]
        if not images:
            raise LayerStackError("A layer stack needs at least one layer.")
        height, width = images[0].shape[:2]
        if positions_z is None:
            positions_z = [(i + 1) * layer_height for i in range(len(images))]
        if len(positions_z) != len(images):
            raise LayerStackError(f"Got {len(positions_z)} Z positions for {len(images)} layers.")

        layers = []
        previous_z = 0.0
        for i, (image, z) in enumerate(zip(images, positions_z)):
            data = image if decode_type == DecodeType.FULL else None
            layers.append(Layer(i, z, z - previous_z, data, exposure_time))
            previous_z = z
        return cls(layers, (width, height), pixel_size_mm, machine_z, decode_type)

    @classmethod
    def from_directory(cls, directory: Union[str, Path], layer_height: float = 0.05, pixel_size_mm: float = 0.05,
                       machine_z: float = 0.0, exposure_time: float = 2.5) -> "LayerStack":
        """Loads one grayscale image per layer, ordered by the numbers in their file names."""
        start_time = time.time()
        directory = Path(directory)
        if not directory.is_dir():
            raise FileFormatError(f"Layer directory not found: {directory}")
        files = sorted(
            (f for f in directory.iterdir() if f.suffix.lower() in SUPPORTED_IMAGE_SUFFIXES),
            key=_natural_sort_key,
        )
        if not files:
            raise FileFormatError(f"No layer images ({', '.join(SUPPORTED_IMAGE_SUFFIXES)}) in {directory}")

        images = []
        for file in files:
            image = cv2.imread(str(file), cv2.IMREAD_GRAYSCALE)
            if image is None:
                raise FileFormatError(f"Could not read layer image: {file}")
            if images and image.shape != images[0].shape:
                raise LayerStackError(f"{file.name} is {image.shape[1]}x{image.shape[0]}, "
                                      f"expected {images[0].shape[1]}x{images[0].shape[0]}")
            images.append(image)
        logger.info(f"Loaded {len(images)} layer images from {directory} in {time.time() - start_time:.3f}s")
        return cls.from_array(images, layer_height, pixel_size_mm, machine_z, exposure_time)

    @classmethod
    def from_file(cls, path: Union[str, Path], layer_height: float = 0.05, pixel_size_mm: float = 0.05,
                  machine_z: float = 0.0, exposure_time: float = 2.5) -> "LayerStack":
        """
        Loads a stack saved as a NumPy volume.

        `.npy` holds a (layers, height, width) array. `.npz` holds it under `layers` and may also hold
        `positions_z`, `pixel_size_mm` and `machine_z`, which take precedence over the arguments.
        """
        path = Path(path)
        if path.is_dir():
            return cls.from_directory(path, layer_height, pixel_size_mm, machine_z, exposure_time)
        if not path.exists():
            raise FileFormatError(f"Layer stack file not found: {path}")

        suffix = path.suffix.lower()
        positions_z = None
        try:
            if suffix == ".npy":
                volume = np.load(path, allow_pickle=False)
            elif suffix == ".npz":
                with np.load(path, allow_pickle=False) as archive:
                    if "layers" not in archive:
                        raise FileFormatError(f"{path} has no 'layers' array.")
                    volume = archive["layers"]
                    if "positions_z" in archive:
                        positions_z = [float(z) for z in archive["positions_z"]]
                    if "pixel_size_mm" in archive:
                        pixel_size_mm = float(archive["pixel_size_mm"])
                    if "machine_z" in archive:
                        machine_z = float(archive["machine_z"])
            else:
                raise FileFormatError(f"Unsupported layer stack format '{suffix}'. Use a directory, .npy or .npz")
        except (OSError, ValueError) as e:
            raise FileFormatError(f"Could not read layer stack {path}: {e}") from e

        if volume.ndim != 3:
            raise FileFormatError(f"{path} must hold a (layers, height, width) array, got shape {volume.shape}")
        return cls.from_array(volume, layer_height, pixel_size_mm, machine_z, exposure_time, positions_z)

    def save_directory(self, directory: Union[str, Path]) -> List[Path]:
        """Writes one PNG per layer."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        width = max(5, len(str(self.last_layer_index)))
        paths = []
        for layer in self.layers:
            path = directory / f"layer{layer.index:0{width}d}.png"
            if not cv2.imwrite(str(path), layer.raster.data):
                raise FileFormatError(f"Could not write layer image: {path}")
            paths.append(path)
        logger.info(f"Saved {len(paths)} layer images to {directory}")
        return paths

    # --- Access ---

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self.layers)

    def __getitem__(self, index: int) -> Layer:
        return self.layer(index)

    def layer(self, index: int) -> Layer:
        if not 0 <= index < len(self.layers):
            raise LayerStackError(f"Layer index {index} out of range (0-{self.last_layer_index})")
        return self.layers[index]

    @property
    def count(self) -> int:
        return len(self.layers)

    @property
    def last_layer_index(self) -> int:
        return len(self.layers) - 1

    @property
    def is_partially_decoded(self) -> bool:
        return self.decode_type == DecodeType.PARTIAL

    @property
    def bounding_rectangle(self) -> Rectangle:
        """Union of the occupied rectangles of all layers."""
        if self._bounding_rectangle is None:
            self._bounding_rectangle = union_rectangles(layer.bounding_rectangle for layer in self.layers)
        return self._bounding_rectangle

    @property
    def first_layer(self) -> Layer:
        """First layer with exposed pixels, or layer 0 when every layer is empty."""
        return next((layer for layer in self.layers if not layer.is_empty), self.layers[0])

    @property
    def print_height(self) -> float:
        return self.layers[-1].position_z if self.layers else 0.0

    @property
    def pixels_per_millimeter(self) -> float:
        return 1.0 / self.pixel_size_mm

    def millimeters_to_pixels(self, millimeters: float) -> float:
        return millimeters * self.pixels_per_millimeter

    def get_layer_image(self, index: int, roi: Optional[Rectangle] = None) -> LayerImage:
        """Layer raster plus a view cropped to `roi` (whole layer when not given)."""
        source = self.layer(index).raster
        rectangle = source.rectangle if roi is None or roi.is_empty else roi.intersect(source.rectangle)
        return LayerImage(source=source, roi=source.roi(rectangle), roi_rectangle=rectangle)

    # --- Modification ---

    def draw_modifications(self, operations: Sequence[PixelDrainHole],
                           progress: Optional[OperationProgress] = None) -> int:
        """
        Applies drain holes to the layer images.

        A hole is cleared from its start layer downwards through solid material until it opens
        into empty space or reaches the first layer.

        Returns:
            Number of layers modified.
        """
        progress = progress or OperationProgress()
        progress.reset("Drilling drain holes", len(operations))
        modified_layers = set()
        for operation in operations:
            if progress.checkpoint():
                break
            modified_layers.update(self._drill(operation))
            progress.increment()
        if modified_layers:
            self._bounding_rectangle = None
        logger.info(f"Applied {len(operations)} drain hole(s), {len(modified_layers)} layer(s) modified.")
        return len(modified_layers)

    def _drill(self, operation: PixelDrainHole) -> List[int]:
        radius = max(1, operation.diameter // 2)
        cx, cy = operation.location
        rectangle = Rectangle(x=cx - radius, y=cy - radius, width=2 * radius + 1, height=2 * radius + 1)
        disc = Raster.zeros(rectangle.width, rectangle.height).draw_circle((radius, radius), radius)
        if rectangle.intersect(Rectangle(width=self.resolution[0], height=self.resolution[1])).is_empty:
            logger.warning(f"Drain hole at {operation.location} is outside the layer area, skipped.")
            return []

        modified = []
        for index in range(self.layer(operation.layer_index).index, -1, -1):
            layer = self.layers[index]
            image = self.get_layer_image(index, rectangle)
            clip = image.roi_rectangle
            mask = disc.roi(clip.offset_by(-rectangle.x, -rectangle.y))
            solid = image.roi.bitwise_and(mask).count_nonzero()
            if solid == 0:
                if modified:
                    break
                continue
            data = image.source.data.copy()
            window = Raster(data).roi(clip)
            window.data[mask.data > 0] = BLACK
            layer.set_data(data)
            modified.append(index)
        logger.debug(f"Drain hole at {operation.location} from layer {operation.layer_index}: layers {modified}")
        return modified


def _natural_sort_key(path: Path):
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", path.name)]

# testing/test_geometry_layers.py

import logging

import numpy as np
import pytest

from slice_dfm.core.common_types import PixelDrainHole, Rectangle
from slice_dfm.core.exceptions import FileFormatError, LayerStackError, RasterProcessingError
from slice_dfm.core.geometry import ContourGroup, ContourHierarchy, contours_intersect
from slice_dfm.core.layers import DecodeType, LayerStack
from slice_dfm.core.raster import Raster
from slice_dfm.testing import generate_test_stacks as stacks

logger = logging.getLogger(__name__)

# --- Rectangles ---

def test_rectangle_union_and_intersection():
    a = Rectangle(x=0, y=0, width=10, height=10)
    b = Rectangle(x=5, y=5, width=10, height=10)
    assert a.union(b) == Rectangle(x=0, y=0, width=15, height=15)
    assert a.intersect(b) == Rectangle(x=5, y=5, width=5, height=5)
    assert a.intersect(Rectangle(x=10, y=0, width=3, height=3)).is_empty
    assert Rectangle().union(b) == b
    assert str(b) == "{X=5,Y=5,Width=10,Height=10}"


def test_rectangle_contains_is_half_open():
    rect = Rectangle(x=2, y=2, width=3, height=3)
    assert rect.contains((2, 2)) and rect.contains((4, 4))
    assert not rect.contains((5, 4))

# --- Rasters ---

def test_raster_rejects_3d_data():
    with pytest.raises(RasterProcessingError):
        Raster(np.zeros((2, 2, 3), dtype=np.uint8))


def test_raster_roi_writes_through():
    raster = Raster.zeros(10, 10)
    window = raster.roi(Rectangle(x=2, y=2, width=3, height=3))
    window.bitwise_not(out=window)
    assert raster.count_nonzero() == 9
    assert raster.bounding_rectangle() == Rectangle(x=2, y=2, width=3, height=3)


def test_raster_size_mismatch():
    with pytest.raises(RasterProcessingError):
        Raster.zeros(3, 3).bitwise_and(Raster.zeros(4, 3))


def test_threshold_is_strictly_above():
    raster = Raster(np.array([[10, 30, 31, 255]], dtype=np.uint8))
    assert raster.threshold(30).data.tolist() == [[0, 0, 255, 255]]

# --- Contours ---

def test_hierarchy_groups_holes_and_nested_islands():
    layer = stacks.square_layer(40, 2, 2, 36, 36)
    layer = stacks.punch(layer, 8, 8, 24, 24)      # hole
    layer[14:26, 14:26] = stacks.WHITE               # island inside the hole
    hierarchy = ContourHierarchy.from_raster(Raster(layer))

    assert len(hierarchy) == 3
    assert sorted(hierarchy.depths.tolist()) == [0, 1, 2]
    assert len(hierarchy.external_contours()) == 1
    positive = hierarchy.positive_groups()
    negative = hierarchy.negative_groups()
    assert len(positive) == 2 and len(negative) == 1
    # The hole carries the nested island as its child
    assert len(negative[0].children) == 1
    outer = max(positive, key=lambda group: group.outer.area)
    assert outer.area == pytest.approx(outer.outer.area - outer.children[0].area)


def test_contour_group_rasterize_excludes_holes():
    group = ContourGroup.from_point_lists([
        [(0, 0), (0, 9), (9, 9), (9, 0)],
        [(3, 3), (3, 6), (6, 6), (6, 3)],
    ])
    mask = group.rasterize()
    assert mask.width == 10 and mask.height == 10
    assert mask.data[0, 0] == 255
    assert mask.data[4, 4] == 0
    assert group.pixel_count() == 100 - 16


def test_contours_intersect():
    a = ContourGroup.from_point_lists([[(0, 0), (0, 4), (4, 4), (4, 0)]])
    b = ContourGroup.from_point_lists([[(4, 4), (4, 8), (8, 8), (8, 4)]])
    c = ContourGroup.from_point_lists([[(6, 0), (6, 2), (8, 2), (8, 0)]])
    assert contours_intersect(a, b)
    assert not contours_intersect(a, c)


def test_centroid_and_offset():
    group = ContourGroup.from_point_lists([[(0, 0), (0, 10), (10, 10), (10, 0)]])
    assert group.centroid == (5, 5)
    assert group.offset(3, 4).centroid == (8, 9)
    line = ContourGroup.from_point_lists([[(0, 0), (5, 0)]])
    assert line.centroid is None

# --- Layer Stacks ---

def test_from_array_heights_and_bounds(make_stack):
    stack = make_stack(stacks.empty_layers_stack("EXX"))
    assert stack.count == 3
    assert [layer.position_z for layer in stack] == [0.05, 0.1, 0.15]
    assert all(layer.layer_height == 0.05 for layer in stack)
    assert stack.print_height == 0.15
    assert stack.first_layer.index == 1
    assert stack.bounding_rectangle == Rectangle(x=4, y=4, width=8, height=8)
    assert stack.pixels_per_millimeter == pytest.approx(20)
    assert stack[0].is_empty and not stack[1].is_empty


def test_layer_rasters_are_read_only(make_stack):
    stack = make_stack(stacks.empty_layers_stack("X"))
    with pytest.raises(ValueError):
        stack[0].raster.data[0, 0] = 1


def test_layer_index_out_of_range(make_stack):
    stack = make_stack(stacks.empty_layers_stack("X"))
    with pytest.raises(LayerStackError):
        stack.layer(1)


def test_from_array_rejects_mismatched_positions():
    with pytest.raises(LayerStackError):
        LayerStack.from_array([stacks.blank_layer(8)] * 2, positions_z=[0.05])
    with pytest.raises(LayerStackError):
        LayerStack.from_array([])


def test_npz_round_trip(tmp_path):
    volume = stacks.sealed_hole_stack(layers=4)
    path = stacks.save_stack(volume, tmp_path / "sealed.npz", machine_z=120.0)
    stack = LayerStack.from_file(path, pixel_size_mm=1.0)
    assert stack.count == 4
    assert stack.machine_z == 120.0
    assert stack.pixel_size_mm == stacks.PIXEL_SIZE
    assert np.array_equal(stack[2].raster.data, volume[2])


def test_npy_and_directory_round_trip(tmp_path, make_stack):
    volume = stacks.empty_layers_stack("XEX")
    np.save(tmp_path / "volume.npy", np.stack(volume))
    from_npy = LayerStack.from_file(tmp_path / "volume.npy")
    assert from_npy.count == 3

    paths = from_npy.save_directory(tmp_path / "layers")
    assert [path.name for path in paths] == ["layer00000.png", "layer00001.png", "layer00002.png"]
    from_dir = LayerStack.from_file(tmp_path / "layers")
    assert all(np.array_equal(a.raster.data, b.raster.data) for a, b in zip(from_npy, from_dir))


def test_directory_uses_natural_order(tmp_path, make_stack):
    make_stack([stacks.blank_layer(8), stacks.square_layer(8, 1, 1, 2, 2)]).save_directory(tmp_path)
    (tmp_path / "layer00000.png").rename(tmp_path / "layer10.png")
    (tmp_path / "layer00001.png").rename(tmp_path / "layer9.png")
    stack = LayerStack.from_directory(tmp_path)
    assert not stack[0].is_empty and stack[1].is_empty


def test_benchmark_stacks_load(benchmark_dir):
    for path in sorted(benchmark_dir.glob("*.npz")):
        stack = LayerStack.from_file(path)
        assert stack.count > 0, path.name


@pytest.mark.parametrize("name", ["missing.npz", "volume.txt"])
def test_from_file_errors(tmp_path, name):
    (tmp_path / "volume.txt").write_text("not a volume")
    with pytest.raises(FileFormatError):
        LayerStack.from_file(tmp_path / name)


def test_partial_decode_has_no_images(make_stack):
    stack = make_stack(stacks.empty_layers_stack("XX"), decode_type=DecodeType.PARTIAL)
    assert stack.is_partially_decoded
    assert stack.bounding_rectangle.is_empty
    assert stack[0].is_empty

# --- Drain Holes ---

def test_drain_hole_drills_down_to_empty_space(make_stack):
    ground = stacks.blank_layer(20)
    plate = stacks.square_layer(20, 2, 2, 16, 16)
    stack = make_stack([ground, plate, plate.copy(), plate.copy()])
    modified = stack.draw_modifications([PixelDrainHole(layer_index=2, location=(10, 10), diameter=4)])
    assert modified == 2
    assert stack[2].raster.data[10, 10] == 0 and stack[1].raster.data[10, 10] == 0
    assert stack[3].raster.data[10, 10] == 255


def test_drain_hole_outside_layer_is_skipped(make_stack):
    stack = make_stack([stacks.square_layer(20, 2, 2, 16, 16)])
    assert stack.draw_modifications([PixelDrainHole(layer_index=0, location=(200, 200), diameter=4)]) == 0

import numpy as np
import pytest
import SimpleITK as sitk
from pydantic import ValidationError

from pyRadDose.core import Grid


def test_grid_from_sitk_image(sample_image):
    grid = Grid.from_sitk_image(sample_image)

    assert grid.dimensions == (7, 5, 3)
    assert grid.num_voxels == 105
    assert grid.numpy_shape == (3, 5, 7)
    assert np.allclose(grid.resolution_vector, [1.0, 1.0, 1.0])
    assert np.allclose(grid.direction, np.eye(3))


def test_grid_origin_alias():
    grid = Grid(
        resolution={"x": 1.0, "y": 2.0, "z": 3.0},
        dimensions=(2, 2, 2),
        cubeCoordOffset=[1.0, 2.0, 3.0],
    )
    assert np.allclose(grid.origin, [1.0, 2.0, 3.0])


@pytest.mark.parametrize(
    "resolution",
    [{"x": 1.0, "y": 1.0}, {"x": 1.0, "y": 0.0, "z": 1.0}, {"x": 1.0, "y": np.inf, "z": 1.0}],
)
def test_grid_invalid_resolution(resolution):
    with pytest.raises(ValidationError):
        Grid(resolution=resolution, dimensions=(2, 2, 2))


def test_grid_invalid_dimensions():
    with pytest.raises(ValidationError):
        Grid(resolution={"x": 1.0, "y": 1.0, "z": 1.0}, dimensions=(2, 0, 2))


def test_grid_empty_image():
    grid = Grid(
        resolution={"x": 1.0, "y": 2.0, "z": 3.0}, dimensions=(4, 3, 2), origin=[-1.0, 0.0, 1.0]
    )
    image = grid.empty_image()

    assert image.GetSize() == (4, 3, 2)
    assert image.GetSpacing() == (1.0, 2.0, 3.0)
    assert image.GetOrigin() == (-1.0, 0.0, 1.0)
    assert np.all(sitk.GetArrayViewFromImage(image) == 0)
    assert Grid.from_sitk_image(image) == grid

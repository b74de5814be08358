import pytest
import numpy as np
import SimpleITK as sitk

from pyRadDose.core import ConfigurationError
from pyRadDose.raytracer import RayTracerBase, RayTracerSiddon
from pyRadDose.stf import Beam


@pytest.fixture
def random_cube():
    rng = np.random.default_rng(0)
    image = sitk.GetImageFromArray(rng.random((3, 5, 7)))
    image.SetSpacing([1, 1, 1])
    return image


@pytest.fixture
def central_beam():
    return Beam(
        iso_center=[0.0, 0.0, 0.0],
        sad=1000.0,
        source_point_bev=[0.0, -1000.0, 0.0],
        source_point=[0.0, -1000.0, 0.0],
        bixel_width=1.0,
        rays=[
            {
                "beamlets": [{"energy": 100.0}],
                "ray_pos_bev": [0.0, 0.0, 0.0],
                "ray_pos": [0.0, 0.0, 0.0],
            }
        ],
    )


def test_raytracer_init_siddon(random_cube):
    raytracer = RayTracerSiddon(random_cube)
    assert isinstance(raytracer, RayTracerBase)
    assert isinstance(raytracer.lateral_cut_off, float)
    assert len(raytracer.cubes) == 1

    cube_dim = random_cube.GetSize()

    assert len(raytracer._x_planes) == cube_dim[0] + 1
    assert len(raytracer._y_planes) == cube_dim[1] + 1
    assert len(raytracer._z_planes) == cube_dim[2] + 1
    assert np.isclose(raytracer._x_planes[0], -0.5)


def test_raytracer_cubes_need_same_grid(random_cube):
    other = sitk.Image([2, 2, 2], sitk.sitkFloat64)
    with pytest.raises(ConfigurationError):
        RayTracerSiddon([random_cube, other])

    with pytest.raises(ConfigurationError):
        RayTracerSiddon([])


def test_raytracer_trace_single_ray(random_cube):
    raytracer = RayTracerSiddon(random_cube)

    isocenter = random_cube.TransformIndexToPhysicalPoint([3, 2, 1])

    source_point = np.array([0.0, -5.0, 0.0])
    target_point = np.array([0.0, 5.0, 0.0])

    alphas, lengths, rho, d12, ix = raytracer.trace_ray(isocenter, source_point, target_point)

    assert len(rho) == len(raytracer.cubes)
    assert alphas.size == lengths.size + 1

    # straight through the middle of the cube in y
    assert ix.tolist() == [3 + 7 * (j + 5 * 1) for j in range(5)]
    cube_np = sitk.GetArrayViewFromImage(random_cube)
    assert np.allclose(rho[0], cube_np.ravel()[ix])
    assert np.isclose(d12, 10.0)
    assert np.allclose(lengths, 1.0)


def test_raytracer_trace_multiple_rays(random_cube):
    raytracer = RayTracerSiddon([random_cube, random_cube])

    isocenter = random_cube.TransformIndexToPhysicalPoint([3, 2, 1])

    source_points = np.array([[0, -5, 0], [0, -5, 0]], dtype=float)
    target_points = np.array([[0, 5, 0], [2, 5, 0]], dtype=float)

    alphas, lengths, rho, d12, ix = raytracer.trace_rays(isocenter, source_points, target_points)

    assert len(rho) == 2
    assert d12.shape == (2, 1)
    assert ix.shape == rho[0].shape == lengths.shape
    assert alphas.shape[1] == lengths.shape[1] + 1

    cube_np = sitk.GetArrayViewFromImage(random_cube)
    valid = ix >= 0
    assert np.allclose(rho[0][valid], cube_np.ravel()[ix[valid]])
    assert np.all(np.isnan(rho[0][~valid]))
    assert np.allclose(rho[0][valid], rho[1][valid])


def test_raytracer_inconsistent_source_points(random_cube):
    raytracer = RayTracerSiddon(random_cube)
    with pytest.raises(ValueError):
        raytracer.trace_rays(
            [0, 0, 0], np.zeros((2, 3)), np.array([[0, 5, 0], [1, 5, 0], [2, 5, 0]], dtype=float)
        )


def _length_inside_box(start, end, lower, upper) -> float:
    """Length of the part of a segment inside an axis aligned box (slab clipping)."""
    direction = end - start
    t_min, t_max = 0.0, 1.0
    for axis in range(3):
        if direction[axis] == 0.0:
            if not lower[axis] <= start[axis] <= upper[axis]:
                return 0.0
            continue
        t_lower = (lower[axis] - start[axis]) / direction[axis]
        t_upper = (upper[axis] - start[axis]) / direction[axis]
        t_min = max(t_min, min(t_lower, t_upper))
        t_max = min(t_max, max(t_lower, t_upper))
    return max(t_max - t_min, 0.0) * float(np.linalg.norm(direction))


@pytest.mark.parametrize("seed", range(20))
def test_raytracer_lengths_sum_to_segment_length(random_cube, seed):
    raytracer = RayTracerSiddon(random_cube)
    rng = np.random.default_rng(seed)

    # grid spans [-0.5, 6.5] x [-0.5, 4.5] x [-0.5, 2.5], points reach beyond it
    lower = np.array([-0.5, -0.5, -0.5])
    upper = np.array([6.5, 4.5, 2.5])
    isocenter = np.array([3.0, 2.0, 1.0])
    start = rng.uniform(lower - 3.0, upper + 3.0)
    end = rng.uniform(lower - 3.0, upper + 3.0)

    _, lengths, rho, d12, ix = raytracer.trace_ray(isocenter, start - isocenter, end - isocenter)

    assert np.isclose(d12, np.linalg.norm(end - start))
    assert np.isclose(np.sum(lengths), _length_inside_box(start, end, lower, upper))
    assert np.unique(ix).size == ix.size
    assert np.all((ix >= 0) & (ix < 105))
    assert np.all(np.isfinite(rho[0]))


def test_raytracer_segment_partly_outside_grid(random_cube):
    raytracer = RayTracerSiddon(random_cube)

    # enters at y = -0.5 and stops in the middle of the grid
    _, lengths, _, d12, ix = raytracer.trace_ray([3.0, 2.0, 1.0], [0.0, -6.0, 0.0], [0.0, 0.0, 0.0])

    assert np.isclose(d12, 6.0)
    assert np.isclose(np.sum(lengths), 2.5)
    assert ix.tolist() == [3 + 7 * (j + 5 * 1) for j in range(3)]


def test_raytracer_ray_outside_grid(random_cube):
    raytracer = RayTracerSiddon(random_cube)

    alphas, lengths, rho, d12, ix = raytracer.trace_ray(
        [0.0, 0.0, 0.0], [-10.0, -10.0, -10.0], [-10.0, 10.0, -10.0]
    )

    assert alphas.size == 0
    assert lengths.size == 0
    assert rho[0].size == 0
    assert ix.size == 0
    assert np.isclose(d12, 20.0)


def test_raytracer_zero_length_ray(random_cube):
    raytracer = RayTracerSiddon(random_cube)

    point = np.array([0.0, 0.0, 0.0])
    _, lengths, rho, d12, ix = raytracer.trace_ray([2.0, 3.0, 1.0], point, point)

    assert ix.tolist() == [2 + 7 * (3 + 5 * 1)]
    assert np.allclose(lengths, 0.0)
    assert d12 == 0.0
    assert rho[0].size == 1


def test_raytracer_plane_crossing_merges_voxels(random_cube):
    raytracer = RayTracerSiddon(random_cube)

    # diagonal through the voxel corners in the x-y plane
    _, lengths, _, _, ix = raytracer.trace_ray(
        [0.0, 0.0, 1.0], [-0.5, -0.5, 0.0], [4.5, 4.5, 0.0]
    )

    assert ix.tolist() == [i + 7 * (i + 5 * 1) for i in range(5)]
    assert np.allclose(lengths, np.sqrt(2.0))


def test_trace_cubes_water_depths(water_phantom, central_beam):
    wet = water_phantom.compute_wet(np.array([[-1000.0, 0.0], [0.0, 1.0], [1000.0, 2.0]]))
    raytracer = RayTracerSiddon([wet])

    depth_cube = raytracer.trace_cubes(central_beam)[0]
    depths = sitk.GetArrayFromImage(depth_cube)

    assert depth_cube.GetSize() == wet.GetSize()
    # central axis along +y, entering at the first voxel
    assert np.allclose(depths[5, :, 5], np.arange(10) + 0.5)
    assert np.all(np.isfinite(depths))


def test_trace_cubes_lateral_cut_off(water_phantom, central_beam):
    wet = water_phantom.compute_wet(np.array([[-1000.0, 0.0], [1000.0, 2.0]]))
    raytracer = RayTracerSiddon([wet])
    raytracer.lateral_cut_off = 1.0

    depths = sitk.GetArrayFromImage(raytracer.trace_cubes(central_beam)[0])

    assert np.all(np.isfinite(depths[5, :, 5]))
    assert np.all(np.isnan(depths[0, :, 0]))

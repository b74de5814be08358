"""Interface for voxel geometry ray tracers."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Union
import logging
import time

import numpy as np
import SimpleITK as sitk

from ..core import ConfigurationError, Grid
from ..core.np2sitk import linear_indices_to_grid_coordinates
from ..geometry import lps

from ._perf import fast_spatial_circle_lookup

if TYPE_CHECKING:
    from ..stf import Beam

logger = logging.getLogger(__name__)


class RayTracerBase(ABC):
    """
    Base class for all ray tracers.

    Attributes
    ----------
    lateral_cut_off : float
        Lateral distance (mm) around each ray position of a beam within which
        the cube tracing is performed.
    precision : np.dtype
        Floating point type used for the traced quantities.
    """

    lateral_cut_off: float
    precision: np.dtype

    @property
    def cubes(self) -> list[sitk.Image]:
        """Cubes of identical geometry to be traced, e.g. density and masks."""
        return self._cubes

    @cubes.setter
    def cubes(self, cubes: Union[sitk.Image, list[sitk.Image]]):
        if not isinstance(cubes, list):
            cubes = [cubes]
        if len(cubes) == 0:
            raise ConfigurationError("At least one cube is needed for ray tracing")

        ref_grid = Grid.from_sitk_image(cubes[0])
        for cube in cubes[1:]:
            if Grid.from_sitk_image(cube) != ref_grid:
                raise ConfigurationError("All traced cubes need to share the same grid")

        self._cubes = cubes
        self._grid = ref_grid
        self._initialize_geometry()
        self._coords = None

    def __init__(self, cubes: Union[sitk.Image, list[sitk.Image]]):
        self.lateral_cut_off = 50.0
        self.precision = np.float64
        self.cubes = cubes
        self._coords = None

    @abstractmethod
    def trace_rays(
        self,
        isocenter: Union[list, np.ndarray],
        source_points: Union[list, np.ndarray],
        target_points: Union[list, np.ndarray],
    ) -> tuple[np.ndarray, np.ndarray, list[np.ndarray], np.ndarray, np.ndarray]:
        """
        Trace multiple rays through the cubes.

        Parameters
        ----------
        isocenter : Union[list, np.ndarray]
            Isocenter coordinates (1x3) array or list
        source_points : Union[list, np.ndarray]
            Source points relative to the isocenter. (nx3) or (1x3) array
        target_points : Union[list, np.ndarray]
            Target points relative to the isocenter. (nx3) array

        Returns
        -------
        alphas : ndarray
            Parametric plane intersections for each ray (NaN padded)
        lengths : ndarray
            Path length within each traversed voxel (NaN padded)
        rho : list[ndarray]
            Sampled values for each ray and each cube (NaN where invalid)
        d12 : ndarray
            Full length of each ray (nx1)
        ix : ndarray
            Linear indices (numpy ordering) of the traversed voxels, -1 where invalid
        """

    def trace_ray(
        self,
        isocenter: Union[list, np.ndarray],
        source_point: Union[list, np.ndarray],
        target_point: Union[list, np.ndarray],
    ) -> tuple[np.ndarray, np.ndarray, list[np.ndarray], float, np.ndarray]:
        """
        Trace an individual ray.

        Returns the same quantities as :meth:`trace_rays` for a single ray,
        but restricted to the voxels within the grid. ``alphas`` keeps one
        more entry than ``lengths`` (segment borders).
        """
        isocenter = np.asarray(isocenter, dtype=np.float64)
        source_point = np.asarray(source_point, dtype=np.float64)
        target_point = np.asarray(target_point, dtype=np.float64)

        if target_point.size != 3 or source_point.size != 3 or isocenter.size != 3:
            raise ValueError(
                "trace_ray traces exactly one ray. Use trace_rays to trace multiple rays at once!"
            )

        alphas, lengths, rho, d12, ix = self.trace_rays(
            isocenter.reshape((1, 3)), source_point.reshape((1, 3)), target_point.reshape((1, 3))
        )

        valid = ix[0] >= 0
        alphas_row = alphas[0]
        border_ix = np.flatnonzero(valid)
        if border_ix.size == 0:
            return (
                np.empty(0, dtype=self.precision),
                np.empty(0, dtype=self.precision),
                [np.empty(0, dtype=self.precision) for _ in self._cubes],
                float(d12[0, 0]),
                np.empty(0, dtype=np.int64),
            )

        # valid segments are contiguous along a ray, so their borders are too
        alphas_row = alphas_row[border_ix[0] : border_ix[-1] + 2]

        return (
            alphas_row,
            lengths[0, valid],
            [r[0, valid] for r in rho],
            float(d12[0, 0]),
            ix[0, valid],
        )

    def trace_cubes(self, beam: "Beam") -> list[sitk.Image]:
        """
        Calculate radiological depth cubes for a beam.

        Sets up a ray matrix with appropriate spacing to trace through all
        cubes, resulting in a cumulative sum of values in every voxel
        relative to the source. Only voxels within ``lateral_cut_off`` of the
        beam's rays are traced. All other voxels are NaN.

        Parameters
        ----------
        beam : Beam
            Beam providing angles, isocenter, SAD, source point and ray
            positions.

        Returns
        -------
        list[sitk.Image]
            One depth cube per traced cube.
        """

        t_trace_start = time.perf_counter()
        if self._coords is None:
            cube_ix = np.arange(self._grid.num_voxels, dtype=np.int64)
            self._coords = linear_indices_to_grid_coordinates(
                cube_ix, self._grid, dtype=self.precision
            )

        rot_mat = lps.get_beam_rotation_matrix(beam.gantry_angle, beam.couch_angle)

        # coordinates relative to the source in the beam's eye view
        coords = (self._coords - beam.iso_center) @ rot_mat - beam.source_point_bev

        resolution = self._grid.resolution_vector
        ray_spacing = np.min(resolution) / np.sqrt(2.0)
        ray_matrix_bev_y = np.max(coords[:, 1]) + np.max(resolution) + beam.source_point_bev[1]
        ray_matrix_scale = 1.0 + ray_matrix_bev_y / beam.sad

        reference_positions_bev = ray_matrix_scale * np.array(
            [ray.ray_pos_bev for ray in beam.rays], dtype=self.precision
        ).reshape(-1, 3)

        rad_depth_arrays = [
            np.full(self._grid.numpy_shape, np.nan, dtype=self.precision) for _ in self._cubes
        ]

        if reference_positions_bev.shape[0] > 0:
            extent = (
                np.max(np.abs(reference_positions_bev[:, [0, 2]]))
                + self.lateral_cut_off
                + ray_spacing
            )
            spacing_range = ray_spacing * np.arange(
                np.floor(-extent / ray_spacing), np.ceil(extent / ray_spacing) + 1
            )
            candidate_x, candidate_z = np.meshgrid(spacing_range, spacing_range)

            candidate_ray_mx = fast_spatial_circle_lookup(
                candidate_x, candidate_z, reference_positions_bev, self.lateral_cut_off
            )

            num_rays = int(np.count_nonzero(candidate_ray_mx))
            ray_matrix_bev = np.column_stack(
                (
                    candidate_x[candidate_ray_mx],
                    np.full(num_rays, ray_matrix_bev_y),
                    candidate_z[candidate_ray_mx],
                )
            )
            ray_matrix_lps = ray_matrix_bev @ rot_mat.T

            logger.debug(
                "Set up %d rays for cube tracing in %.3f seconds",
                num_rays,
                time.perf_counter() - t_trace_start,
            )

            _, lengths, rho, _, ix = self.trace_rays(
                beam.iso_center.reshape(1, 3), beam.source_point.reshape(1, 3), ray_matrix_lps
            )

            # every voxel takes its depth from the ray whose cell contains its projection
            valid_ix = ix >= 0
            x_dist = np.full(ix.shape, np.nan, dtype=self.precision)
            z_dist = np.full(ix.shape, np.nan, dtype=self.precision)
            voxel_coords = coords[ix[valid_ix]]
            scale_factor = (ray_matrix_bev_y + beam.sad) / voxel_coords[:, 1]
            x_dist[valid_ix] = voxel_coords[:, 0] * scale_factor
            z_dist[valid_ix] = voxel_coords[:, 2] * scale_factor
            x_dist -= ray_matrix_bev[:, 0, np.newaxis]
            z_dist -= ray_matrix_bev[:, 2, np.newaxis]

            ray_selection = ray_spacing / 2.0
            ix_remember = (
                (x_dist > -ray_selection)
                & (x_dist <= ray_selection)
                & (z_dist > -ray_selection)
                & (z_dist <= ray_selection)
            )

            for i, depth_array in enumerate(rad_depth_arrays):
                rel_depths = np.where(valid_ix, lengths * rho[i], 0.0)
                rel_depths = np.cumsum(rel_depths, axis=1) - rel_depths / 2.0
                depth_array.ravel()[ix[ix_remember]] = rel_depths[ix_remember]

        logger.debug("Cube tracing took %.3f seconds", time.perf_counter() - t_trace_start)

        rad_depth_cubes = []
        for i, depth_array in enumerate(rad_depth_arrays):
            image = sitk.GetImageFromArray(depth_array)
            image.CopyInformation(self._cubes[i])
            rad_depth_cubes.append(image)

        return rad_depth_cubes

    @abstractmethod
    def _initialize_geometry(self):
        """
        Initialize geometry of the ray tracer.

        Will be automatically called when the cubes are set.
        """

"""Siddon Ray Tracing Algorithm for Voxelized Geometry."""

from typing import Union
import time
import logging

import numpy as np
import SimpleITK as sitk

from ._base import RayTracerBase

logger = logging.getLogger(__name__)


class RayTracerSiddon(RayTracerBase):
    """
    Vectorized Siddon ray tracing through voxelized geometry.

    Rays are traced simultaneously, shorter rays are padded with NaN.

    Attributes
    ----------
    alpha_merge_tolerance : float
        Parametric distance below which two plane intersections are
        considered identical (e.g. when a ray crosses a voxel edge).
    """

    debug_core_performance: bool
    alpha_merge_tolerance: float

    def __init__(self, cubes: Union[sitk.Image, list[sitk.Image]]):
        self.debug_core_performance = False
        self.alpha_merge_tolerance = 1e-10
        super().__init__(cubes)

    def trace_rays(
        self,
        isocenter: Union[list, np.ndarray],
        source_points: Union[list, np.ndarray],
        target_points: Union[list, np.ndarray],
    ) -> tuple[np.ndarray, np.ndarray, list[np.ndarray], np.ndarray, np.ndarray]:
        """
        Vectorized Implementation of RayTracing.

        Uses padding to create matrices of ray information.
        """

        isocenter = np.asarray(isocenter, dtype=self.precision).reshape((1, 3))
        source_points = np.atleast_2d(np.asarray(source_points, dtype=self.precision))
        target_points = np.atleast_2d(np.asarray(target_points, dtype=self.precision))

        num_rays = target_points.shape[0]
        num_sources = source_points.shape[0]

        if num_sources not in (num_rays, 1):
            raise ValueError(
                f"Number of source points ({num_sources}) needs to be one or equal to number of "
                f"target points ({num_rays})!"
            )
        if num_sources == 1:
            source_points = np.tile(source_points, (num_rays, 1))

        self._source_points = source_points + isocenter
        self._target_points = target_points + isocenter
        self._ray_vec = self._target_points - self._source_points

        t_start = time.perf_counter()
        alphas = self._compute_all_alphas()
        t_alphas = time.perf_counter()

        d12 = np.linalg.norm(self._ray_vec, axis=1, keepdims=True)

        if alphas.shape[1] < 2:
            return (
                np.empty((num_rays, 0), dtype=self.precision),
                np.empty((num_rays, 0), dtype=self.precision),
                [np.empty((num_rays, 0), dtype=self.precision) for _ in self._cubes],
                d12,
                np.empty((num_rays, 0), dtype=np.int64),
            )

        tmp_diff = np.diff(alphas, axis=1)
        lengths = d12 * tmp_diff
        alphas_mid = alphas[:, :-1] + 0.5 * tmp_diff

        val_ix, ijk = self._compute_indices_from_alpha(alphas_mid)
        rho, ix = self._get_rho_and_indices(val_ix, ijk)

        if self.debug_core_performance:
            logger.debug(
                "Traced %d rays: alphas %.4fs, indices %.4fs",
                num_rays,
                t_alphas - t_start,
                time.perf_counter() - t_alphas,
            )

        return alphas, lengths, rho, d12, ix

    def _compute_all_alphas(self) -> np.ndarray:
        """
        Compute all rays' alpha values (length to plane intersections).

        All plane intersections between the entry and exit plane are computed
        per axis, merged with the alpha limits and sorted. Values out of
        scope and duplicates are set to NaN and moved to the end of each row.
        """

        alpha_limits = self._compute_alpha_limits()

        i_min, i_max, j_min, j_max, k_min, k_max = self._compute_entry_and_exit(alpha_limits)

        alpha_x = self._compute_plane_alphas(
            i_min, i_max, self._x_planes, self._source_points[:, 0], self._ray_vec[:, 0]
        )
        alpha_y = self._compute_plane_alphas(
            j_min, j_max, self._y_planes, self._source_points[:, 1], self._ray_vec[:, 1]
        )
        alpha_z = self._compute_plane_alphas(
            k_min, k_max, self._z_planes, self._source_points[:, 2], self._ray_vec[:, 2]
        )

        plane_alphas = np.concatenate((alpha_x, alpha_y, alpha_z), axis=1)
        with np.errstate(invalid="ignore"):
            outside = (plane_alphas < alpha_limits[:, :1]) | (plane_alphas > alpha_limits[:, 1:])
        plane_alphas[outside] = np.nan

        alphas = np.concatenate((alpha_limits, plane_alphas), axis=1)

        # row-wise unique: sort, mark (near) duplicates as NaN, sort NaNs to the end
        alphas.sort(axis=1)
        with np.errstate(invalid="ignore"):
            mask = np.diff(alphas, axis=1) <= self.alpha_merge_tolerance
        alphas[:, 1:][mask] = np.nan
        alphas.sort(axis=1)

        max_num_columns = np.max(np.sum(~np.isnan(alphas), axis=1), initial=0)
        return alphas[:, :max_num_columns]

    def _compute_plane_alphas(
        self,
        dim_min: np.ndarray,
        dim_max: np.ndarray,
        planes: np.ndarray,
        source: np.ndarray,
        ray: np.ndarray,
    ) -> np.ndarray:
        """
        Compute the alphas for the planes of one axis.

        Parameters
        ----------
        dim_min : np.ndarray
            Index of the first crossed plane per ray.
        dim_max : np.ndarray
            Index of the last crossed plane per ray.
        planes : np.ndarray
            The plane positions along the axis.
        source : np.ndarray
            The source point coordinate along the axis.
        ray : np.ndarray
            The ray vector component along the axis.

        Returns
        -------
        alphas : np.ndarray
            (N, P) alphas, NaN for planes that are not crossed.
        """

        plane_ix = np.arange(planes.shape[0])[None, :]
        with np.errstate(invalid="ignore"):
            mask_invalid = (
                (plane_ix < dim_min[:, None])
                | (plane_ix > dim_max[:, None])
                | np.isnan(dim_min)[:, None]
                | np.isnan(dim_max)[:, None]
                | (ray == 0.0)[:, None]
            )

        with np.errstate(divide="ignore", invalid="ignore"):
            alphas = (planes[None, :] - source[:, None]) / ray[:, None]

        alphas[mask_invalid] = np.nan

        return alphas

    def _compute_alpha_limits(self) -> np.ndarray:
        """
        Compute the parametric entry and exit of each ray into the grid.

        Rays that miss the grid get NaN limits. Rays of zero length get the
        limits [0, 1].
        """

        p_min = np.asarray(
            [self._x_planes[0], self._y_planes[0], self._z_planes[0]], dtype=self.precision
        )
        p_max = np.asarray(
            [self._x_planes[-1], self._y_planes[-1], self._z_planes[-1]], dtype=self.precision
        )

        with np.errstate(divide="ignore", invalid="ignore"):
            alpha_planes = np.stack(
                (
                    (p_min - self._source_points) / self._ray_vec,
                    (p_max - self._source_points) / self._ray_vec,
                ),
                axis=-1,
            )

        alpha_axis_min = np.nanmin(alpha_planes, axis=-1)
        alpha_axis_max = np.nanmax(alpha_planes, axis=-1)

        zero_mask = (self._ray_vec == 0.0).all(axis=1)
        alpha_axis_min[zero_mask] = 0.0
        alpha_axis_max[zero_mask] = 1.0

        alpha_min_values = np.maximum(0.0, np.nanmax(alpha_axis_min, axis=1))
        alpha_max_values = np.minimum(1.0, np.nanmin(alpha_axis_max, axis=1))

        # zero length rays are kept if their point lies within the grid
        inside = np.all((self._source_points >= p_min) & (self._source_points <= p_max), axis=1)
        miss = (alpha_min_values >= alpha_max_values) & ~(zero_mask & inside)
        alpha_min_values[miss] = np.nan
        alpha_max_values[miss] = np.nan

        return np.stack((alpha_min_values, alpha_max_values), axis=1)

    def _compute_entry_and_exit(self, alpha_limits: np.ndarray):
        """Compute the first and last plane index crossed along each axis."""

        ray_direction_positive = self._ray_vec > 0
        alpha_limits_reverse = alpha_limits[:, ::-1]

        alpha_axis = np.where(
            ray_direction_positive[:, :, None],
            alpha_limits[:, None, :],
            alpha_limits_reverse[:, None, :],
        )

        lower_planes = np.array(
            [self._x_planes[0], self._y_planes[0], self._z_planes[0]], dtype=self.precision
        )
        upper_planes = np.array(
            [self._x_planes[-1], self._y_planes[-1], self._z_planes[-1]], dtype=self.precision
        )

        nplanes = np.asarray(self._num_planes, dtype=self.precision)

        dim_min = (
            nplanes[None, :]
            - (upper_planes - alpha_axis[:, :, 0] * self._ray_vec - self._source_points)
            / self._resolution[None, :]
            - 1
        )
        dim_max = (
            self._source_points + alpha_axis[:, :, 1] * self._ray_vec - lower_planes
        ) / self._resolution[None, :]

        # rounding to absorb floating point noise at plane positions
        dim_min = np.ceil(np.round(1000 * dim_min) / 1000)
        dim_max = np.floor(np.round(1000 * dim_max) / 1000)

        i_min, j_min, k_min = dim_min.T
        i_max, j_max, k_max = dim_max.T

        return i_min, i_max, j_min, j_max, k_min, k_max

    def _compute_indices_from_alpha(self, alphas_mid: np.ndarray):
        """Voxel subscripts (N, 3, M) of segment midpoints and their validity (N, M)."""
        cube_origin = self._grid.origin

        sp_scaled = (self._source_points - cube_origin) / self._resolution
        rv_scaled = self._ray_vec / self._resolution

        ijk = sp_scaled[:, :, None] + rv_scaled[:, :, None] * alphas_mid[:, None, :]
        ijk[~np.isfinite(ijk)] = -1.0

        np.round(ijk, out=ijk)
        ijk = ijk.astype(np.int64, copy=False)

        cube_dim_brd = self._cube_dim[None, :, None]
        val_ix = ((ijk >= 0) & (ijk < cube_dim_brd)).all(axis=1)

        return val_ix, ijk

    def _get_rho_and_indices(self, val_ix: np.ndarray, ijk: np.ndarray):
        """
        Finalize the output of densities and indices.

        Returns
        -------
        rho : list[np.ndarray]
            The sampled values for each cube.
        ix : np.ndarray
            The linear numpy-ordered indices within the cubes, -1 if invalid.
        """
        nx, ny = self._cube_dim[0], self._cube_dim[1]

        ix = ijk[:, 0, :].copy()
        ix += nx * ijk[:, 1, :]
        ix += nx * ny * ijk[:, 2, :]

        ix[~val_ix] = -1

        rho = [np.full(val_ix.shape, np.nan, dtype=self.precision) for _ in self._cubes]
        for s, cube in enumerate(self._cubes):
            # (z, y, x) ordered buffer, so C-order raveling matches the linear indices
            cube_linear = sitk.GetArrayViewFromImage(cube).ravel()
            rho[s][val_ix] = cube_linear[ix[val_ix]]

        return rho, ix

    def _initialize_geometry(self):
        """
        Initialize the plane positions for the ray tracing.

        Notes
        -----
        For a detailed description of the variables, see Siddon 1985 Medical Physics.
        """

        ref_cube = self._cubes[0]

        if ref_cube.GetDimension() != 3:
            raise ValueError("Only 3D cubes are supported by RayTracerSiddon!")

        origin = self._grid.origin.astype(self.precision)
        self._resolution = self._grid.resolution_vector.astype(self.precision)
        self._cube_dim = np.asarray(self._grid.dimensions, dtype=np.int64)

        increment = np.diag(self._grid.direction) * self._resolution

        self._x_planes = origin[0] + (np.arange(self._cube_dim[0] + 1) - 0.5) * increment[0]
        self._y_planes = origin[1] + (np.arange(self._cube_dim[1] + 1) - 0.5) * increment[1]
        self._z_planes = origin[2] + (np.arange(self._cube_dim[2] + 1) - 0.5) * increment[2]

        self._num_planes = [len(self._x_planes), len(self._y_planes), len(self._z_planes)]

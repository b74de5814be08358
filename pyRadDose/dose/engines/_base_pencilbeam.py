"""Base class for pencil beam dose calculation algorithms."""

from abc import abstractmethod
from typing import Any
import logging
import time
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

import SimpleITK as sitk
import numpy as np
from scipy import sparse

from ...core import GeometryInconsistency, ConfigurationError, np2sitk
from ...ct import CT, default_hlut
from ...cst import StructureSet
from ...stf import SteeringInformation
from ...dij import Dij
from ...geometry import get_beam_rotation_matrix
from ...raytracer import RayTracerSiddon
from .._sparse import SparseColumnBuilder

from ._base import DoseEngineBase


logger = logging.getLogger(__name__)


class PencilBeamEngineAbstract(DoseEngineBase):
    """
    An abstract class representing the Pencil Beam Engine.

    This class extends DoseEngineBase and provides the foundational structure for implementing a
    pencil beam dose calculation engine. Dose is computed beam by beam, ray by ray and bixel by
    bixel in the traversal order of the steering information.

    Attributes
    ----------
    keep_rad_depth_cubes : bool
        Flag to keep radiation depth cubes.
    geometric_lateral_cutoff : float
        Lateral geometric cut-off in mm, used for raytracing and geometry.
    dosimetric_lateral_cutoff : float
        Relative dosimetric cut-off (in fraction of values calculated).
    ssd_density_threshold : float
        Threshold for SSD computation.
    use_given_eq_density_cube : bool
        Use the given density cube ct.cube and omit conversion from cube_hu.
    ignore_outside_densities : bool
        Ignore densities outside of cst contours.
    hlut : np.ndarray, optional
        Hounsfield look-up table for the density conversion.
    cube_wed : sitk.Image
        Water equivalent density image used for ray tracing.
    """

    keep_rad_depth_cubes: bool
    geometric_lateral_cutoff: float
    dosimetric_lateral_cutoff: float
    ssd_density_threshold: float
    use_given_eq_density_cube: bool
    ignore_outside_densities: bool
    cube_wed: sitk.Image
    hlut: np.ndarray

    def __init__(self, pln=None):
        self.keep_rad_depth_cubes = False
        self.geometric_lateral_cutoff: float = 50
        self.dosimetric_lateral_cutoff: float = 0.9950
        self.ssd_density_threshold: float = 0.0500
        self.use_given_eq_density_cube: bool = False
        self.ignore_outside_densities: bool = True
        self.cube_wed = None
        self.hlut = None

        self._computed_quantities = []
        self._effective_lateral_cutoff = None
        self._containers = {}
        self._rad_depth_cubes = []
        self._raytracer = None

        super().__init__(pln)

    @abstractmethod
    def _compute_bixel(self, curr_ray: dict, k: int) -> dict:
        raise NotImplementedError("Method _compute_bixel must be implemented in derived class.")

    def _calc_dose(self, ct: CT, cst: StructureSet, stf: SteeringInformation) -> Dij:
        """
        Calculate the dose using the pencil beam method.

        Parameters
        ----------
        ct : CT
            The CT object.
        cst : StructureSet
            The structure set object.
        stf : SteeringInformation
            The steering information object.

        Returns
        -------
        Dij
            The dose influence matrices.
        """

        dij = self._init_dose_calc(ct, cst, stf)

        with logging_redirect_tqdm():
            for i in tqdm(range(stf.num_of_beams), desc="Beam", unit="b", leave=False):
                self._check_cancel()

                # beams where all rays missed the target have no columns
                if stf.beams[i].num_of_rays == 0:
                    logger.info("Beam %d has no rays, skipping.", i + 1)
                    continue

                t = time.perf_counter()
                curr_beam = self._init_beam(dij, ct, cst, stf, i)
                logger.info(
                    "Beam %d initialized in %f seconds.", i + 1, time.perf_counter() - t
                )

                for j in tqdm(
                    range(curr_beam["beam"].num_of_rays), desc="Ray", unit="r", leave=False
                ):
                    curr_ray = self._init_ray(curr_beam, j)

                    # rays not hitting any voxel of interest contribute nothing
                    if curr_ray["rad_depths"].size == 0:
                        logger.debug("Ray %d of beam %d does not hit any voxel", j, i)
                        continue

                    for k in range(curr_ray["num_of_bixels"]):
                        curr_bixel = self._compute_bixel(curr_ray, k)
                        self._fill_dij(curr_bixel)

        logger.info("Finalizing dose calculation...")
        t_start = time.perf_counter()
        dij = self._finalize_dose(dij)
        logger.info("Done in %f seconds.", time.perf_counter() - t_start)

        return dij

    def _init_dose_calc(self, ct: CT, cst: StructureSet, stf: SteeringInformation) -> dict:
        """
        Initialize the dose calculation.

        Modified inherited method of the superclass DoseEngine,
        containing initialization which is specifically needed for
        pencil beam calculation and not for other engines.
        """

        dij = super()._init_dose_calc(ct, cst, stf)

        self._computed_quantities = []
        self._containers = {}
        self._rad_depth_cubes = []
        self._stf = stf

        if not 0.0 < self.dosimetric_lateral_cutoff <= 1.0:
            raise ConfigurationError(
                "dosimetric_lateral_cutoff must be a value > 0 and <= 1, "
                f"got {self.dosimetric_lateral_cutoff}"
            )

        # calculate rED or rSP from HU or take provided density cube
        if self.use_given_eq_density_cube and ct.cube is None:
            self._warn(
                "HU Conversion requested to be omitted but no ct.cube exists! "
                "Will override and do the conversion anyway!"
            )
            self.use_given_eq_density_cube = False

        if self.use_given_eq_density_cube:
            logger.info("Omitting HU to rED/rSP conversion and using existing ct.cube!")
            ct_wed = ct.cube
        else:
            if self.hlut is None:
                self.hlut = default_hlut(self._machine.radiation_mode)
            ct_wed = ct.compute_wet(self.hlut)

        self.cube_wed = ct_wed

        # Ignore densities outside of contours
        if self.ignore_outside_densities:
            mask_image = np2sitk.linear_indices_to_sitk_mask(self._vct_grid, self.cube_wed)
            self.cube_wed = sitk.Mask(self.cube_wed, mask_image, outsideValue=0)

        dij = self._allocate_quantity_matrices(dij, ["physical_dose"])

        self._raytracer = RayTracerSiddon([self.cube_wed])
        self._raytracer.lateral_cut_off = self.geometric_lateral_cutoff

        self._effective_lateral_cutoff = self.geometric_lateral_cutoff

        return dij

    def _allocate_quantity_matrices(self, dij: dict[str, Any], names: list[str]) -> dict:
        """
        Allocate the containers of the requested quantities.

        Direct calculations accumulate into one dense column, influence
        calculations fill a sparse column builder.
        """
        num_voxels = self.dose_grid.num_voxels

        container_size = self.num_of_bixels_container
        if container_size is not None and int(container_size) < 1:
            raise ConfigurationError(
                f"num_of_bixels_container needs to be a positive integer, got {container_size}"
            )

        for q_name in names:
            if self._calc_dose_direct:
                self._containers[q_name] = np.zeros(num_voxels, dtype=np.float64)
            else:
                self._containers[q_name] = SparseColumnBuilder(
                    num_voxels, self._num_of_columns_dij, container_size=container_size
                )

            self._computed_quantities.append(q_name)

        return dij

    def _init_beam(
        self, _dij: dict, ct: CT, _cst: StructureSet, stf: SteeringInformation, i: int
    ) -> dict:
        """
        Initialize the beam for pencil beam dose calculation.

        Parameters
        ----------
        _dij : dict
            The dose influence matrix dictionary.
        ct : CT
            The CT object.
        _cst : StructureSet
            The structure set object. Unused here
        stf : SteeringInformation
            The steering information object.
        i : int
            Index of the beam.

        Returns
        -------
        dict
            Beam Information dictionary
        """
        beam = stf.beams[i]
        beam_info = {"beam": beam, "beam_index": i}

        # global column of the first bixel of each ray
        ray_map = stf.bixel_ray_index_per_beam_map[
            stf.beam_bixel_offsets[i] : stf.beam_bixel_offsets[i] + beam.total_number_of_bixels
        ]
        beam_info["ray_columns"] = stf.beam_bixel_offsets[i] + np.searchsorted(
            ray_map, np.arange(beam.num_of_rays)
        )

        beam_info["rot_mat_system_T"] = get_beam_rotation_matrix(
            beam.gantry_angle, beam.couch_angle
        )

        # Rotate coordinates (1st couch around Y axis, 2nd gantry movement)
        rot_coords = (self._vox_world_coords - beam.iso_center) @ beam_info["rot_mat_system_T"]
        rot_coords -= beam.source_point_bev

        logger.info("Calculating radiological depth cube...")
        start_time = time.perf_counter()

        rad_depth_cube = self._raytracer.trace_cubes(beam)[0]

        logger.info(
            "Elapsed time for rayTracing per Beam: %f seconds", time.perf_counter() - start_time
        )

        if self.keep_rad_depth_cubes:
            self._rad_depth_cubes.append(rad_depth_cube)

        rad_depths = sitk.GetArrayViewFromImage(rad_depth_cube).ravel()[self._vct_grid]

        beam_info["valid_coords"] = np.isfinite(rad_depths)
        beam_info["rad_depths"] = rad_depths
        beam_info["bev_coords"] = rot_coords

        # target points are not necessarily stored in the stf
        beam_info["target_points"] = np.array(
            [
                ray.target_point
                if ray.target_point is not None
                else 2 * ray.ray_pos - beam.source_point
                for ray in beam.rays
            ]
        ).reshape((-1, 3))
        beam_info["target_points_bev"] = np.array(
            [
                ray.target_point_bev
                if ray.target_point_bev is not None
                else 2 * ray.ray_pos_bev - beam.source_point_bev
                for ray in beam.rays
            ]
        ).reshape((-1, 3))

        beam_info["ssd"] = self._compute_ssd(beam_info)

        return beam_info

    def _init_ray(self, beam_info: dict[str, Any], j: int) -> dict[str, Any]:
        """
        Initialize a ray for pencil beam dose calculation.

        Parameters
        ----------
        beam_info : dict
            The current beam data.
        j : int
            The ray index.

        Returns
        -------
        dict
            The initialized ray.
        """
        beam = beam_info["beam"]
        stf_ray = beam.rays[j]

        ray = {
            "beam_index": beam_info["beam_index"],
            "ray_index": j,
            "beamlets": stf_ray.beamlets,
            "num_of_bixels": stf_ray.num_of_bixels,
            "first_column": int(beam_info["ray_columns"][j]),
            "iso_center": beam.iso_center,
            "source_point_bev": beam.source_point_bev,
            "target_point_bev": beam_info["target_points_bev"][j],
            "sad": beam.sad,
            "bixel_width": beam.bixel_width,
            "ssd": float(beam_info["ssd"][j]),
        }

        self._get_ray_geometry_from_beam(ray, beam_info)

        return ray

    def _compute_ssd(self, beam_info: dict) -> np.ndarray:
        """
        Source to surface distances of all rays of a beam.

        SSDs stored in the steering information are used as they are.
        Missing values are computed by tracing the ray through the density
        cube. Rays that never reach the surface take the SSD of the closest
        ray with a surface.
        """

        beam = beam_info["beam"]
        i = beam_info["beam_index"]
        ssd = np.array(
            [np.nan if ray.ssd is None else ray.ssd for ray in beam.rays], dtype=np.float64
        )

        missing = np.flatnonzero(np.isnan(ssd))
        if missing.size == 0:
            return ssd

        alphas, _, rho, d12, ix = self._raytracer.trace_rays(
            beam.iso_center,
            beam.source_point.reshape((1, 3)),
            beam_info["target_points"][missing],
        )

        for m, j in enumerate(missing):
            above = np.flatnonzero((ix[m] >= 0) & (rho[0][m] > self.ssd_density_threshold))
            if above.size == 0:
                continue

            first_valid = np.flatnonzero(ix[m] >= 0)[0]
            if above[0] == first_valid:
                self._warn(
                    f"Surface for SSD calculation starts directly in first voxel of CT "
                    f"(beam {i}, ray {j})"
                )

            ssd[j] = d12[m, 0] * alphas[m, above[0]]

        still_missing = np.flatnonzero(np.isnan(ssd))
        if still_missing.size == 0:
            return ssd

        has_ssd = np.flatnonzero(~np.isnan(ssd))
        if has_ssd.size == 0:
            raise GeometryInconsistency("Could not determine the SSD of any ray", beam_ix=i)

        ray_pos_bev = np.array([ray.ray_pos_bev for ray in beam.rays])
        for j in still_missing:
            closest = self._closest_neighbor(ray_pos_bev[has_ssd], ray_pos_bev[j])
            ssd[j] = ssd[has_ssd[closest]]
            self._warn(
                f"Could not determine SSD for ray {j} of beam {i}. "
                f"Using SSD of closest ray {has_ssd[closest]}."
            )

        return ssd

    @staticmethod
    def _closest_neighbor(ray_pos_bev: np.ndarray, curr_pos: np.ndarray) -> int:
        """Index of the ray position closest to ``curr_pos``."""
        distances = np.sum((ray_pos_bev - curr_pos) ** 2, axis=1)
        return int(np.argmin(distances))

    def _get_ray_geometry_from_beam(self, ray: dict[str, Any], beam_info: dict[str, Any]):
        lateral_ray_cutoff = self._get_lateral_distance_from_dose_cutoff_on_ray(ray)

        ix, radial_dist_sq = self.calc_geo_dists(
            beam_info["bev_coords"],
            ray["source_point_bev"],
            ray["target_point_bev"],
            ray["sad"],
            beam_info["valid_coords"],
            lateral_ray_cutoff,
        )

        # positions within the voxels of interest and linear indices on the grid
        ray["valid_coords"] = ix
        ray["ix"] = self._vct_grid[ix]

        ray["radial_dist_sq"] = radial_dist_sq
        ray["rad_depths"] = beam_info["rad_depths"][ix]

    def _get_lateral_distance_from_dose_cutoff_on_ray(self, ray: dict) -> float:
        """
        Obtain the maximum lateral cutoff on a ray.

        Parameters
        ----------
        ray : dict
            The ray data. Unused in this base implementation.

        Returns
        -------
        float
            The lateral distance from the dose cutoff on the ray.
        """

        return ray.get("effective_lateral_cut_off", self._effective_lateral_cutoff)

    def _fill_dij(self, bixel: dict):
        """
        Fill the dose influence matrix (dij) with bixel contents.

        This is the last step in bixel dose calculation. It will fill all
        the computed quantities into the sparse matrix containers.
        If forward calculation is active, accumulation into dense vectors
        will be performed instead.

        Parameters
        ----------
        bixel : dict
            The bixel data, including its column and voxel indices.
        """
        if "ix" not in bixel or bixel["ix"].size == 0:
            return

        for q_name in self._computed_quantities:
            if self._calc_dose_direct:
                self._containers[q_name][bixel["ix"]] += bixel["weight"] * bixel[q_name]
            else:
                self._containers[q_name].append(bixel["column"], bixel["ix"], bixel[q_name])

    def _finalize_dose(self, dij: dict) -> Dij:
        """
        Finalize the dose influence matrix.

        Converts the containers into compressed sparse matrices.

        Parameters
        ----------
        dij : dict
            The dose influence matrix.

        Returns
        -------
        Dij
            The finalized dose influence matrix.
        """

        for q_name in self._computed_quantities:
            container = self._containers[q_name]
            if self._calc_dose_direct:
                matrix = sparse.csc_array(container.reshape((-1, 1)))
                matrix.eliminate_zeros()
            else:
                matrix = container.finalize()

            dij[q_name] = matrix

        self._containers = {}

        if self.keep_rad_depth_cubes and self._rad_depth_cubes:
            dij["rad_depth_cubes"] = self._rad_depth_cubes

        return super()._finalize_dose(dij)

    @staticmethod
    def calc_geo_dists(
        rot_coords_bev: np.ndarray,
        source_point_bev: np.ndarray,
        target_point_bev: np.ndarray,
        sad: float,
        rad_depth_ix: np.ndarray,
        lateral_cutoff: float,
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Calculate geometric distances for dose calculation.

        Parameters
        ----------
        rot_coords_bev : ndarray
            Coordinates in beam's eye view (BEV) of the voxels where ray tracing results are
            available, relative to the source.
        source_point_bev : ndarray
            Source point in voxel coordinates in BEV.
        target_point_bev : ndarray
            Target point in voxel coordinates in BEV.
        sad : float
            Source-to-axis distance.
        rad_depth_ix : ndarray
            Subset of voxels for which radiological depth calculations are available.
        lateral_cutoff : float
            Lateral cutoff specifying the neighborhood for dose calculations.

        Returns
        -------
        ix : ndarray
            Mask of voxels where dose influence is computed.
        rad_distances_sq : ndarray
            Squared radial distances to the central ray, for the voxels in ``ix``.
        """
        # central ray of the beam from the source through the isocenter
        a = -source_point_bev / np.linalg.norm(source_point_bev)

        # ray of the current beamlet
        b = target_point_bev - source_point_bev
        b = b / np.linalg.norm(b)

        # rotate the beamlet onto the central axis (Rodrigues)
        cross = np.cross(a, b)
        if np.allclose(cross, 0.0):
            rot_coords_temp = rot_coords_bev[rad_depth_ix, :]
        else:

            def ssc(v: np.ndarray) -> np.ndarray:
                """Skew-symmetric cross product matrix."""
                return np.array([[0, -v[2], v[1]], [v[2], 0, -v[0]], [-v[1], v[0], 0]])

            derived_rot_mat = (
                np.eye(3)
                + ssc(cross)
                + ssc(cross) @ ssc(cross) * (1 - np.dot(a, b)) / (np.linalg.norm(cross) ** 2)
            )
            rot_coords_temp = rot_coords_bev[rad_depth_ix, :] @ derived_rot_mat

        # Put [0 0 0] position CT in center of the beamlet
        lat_dists = rot_coords_temp[:, [0, 2]] + source_point_bev[[0, 2]]

        # Check if radial distance exceeds lateral cutoff (projected to iso center)
        rad_distances_sq = np.sum(lat_dists**2, axis=1)
        if np.isinf(lateral_cutoff):
            subset_mask = np.ones(rad_distances_sq.shape, dtype=bool)
        else:
            subset_mask = (
                rad_distances_sq <= (lateral_cutoff / sad) ** 2 * rot_coords_temp[:, 1] ** 2
            )

        ix = rad_depth_ix.copy()
        ix[rad_depth_ix] = subset_mask

        return ix, rad_distances_sq[subset_mask]

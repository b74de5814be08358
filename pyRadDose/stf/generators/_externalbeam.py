import logging
import math
from typing import Any, Optional, Union

import numpy as np
from numpy.typing import ArrayLike
import SimpleITK as sitk
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from ...core import ConfigurationError
from ...geometry import lps
from ...raytracer import RayTracerSiddon
from ...plan import Plan
from ._base import StfGeneratorBase

logger = logging.getLogger(__name__)


class StfGeneratorExternalBeam(StfGeneratorBase):
    """
    Base class for geometry generated for external beam therapy.

    Provides the basic functionality and infrastructure for external beam
    therapy, such as the definition of gantry / couch angles, an isocenter,
    and basic ray geometry transformations.

    Attributes
    ----------
    gantry_angles : list[float]
        A list of gantry angles.
    couch_angles : list[float]
        A list of couch angles.
    iso_center : Union[ArrayLike, None]
        The isocenter coordinates. Defaults to the target's center of mass.
    """

    gantry_angles: list[float]
    couch_angles: list[float]
    iso_center: Union[ArrayLike, None]

    @property
    def num_of_beams(self) -> int:
        """Number of beams."""
        if len(self.gantry_angles) != len(self.couch_angles):
            raise ConfigurationError(
                f"Inconsistent number of gantry ({len(self.gantry_angles)}) and couch "
                f"({len(self.couch_angles)}) angles."
            )

        return len(self.gantry_angles)

    def __init__(self, pln: Plan = None):
        self.gantry_angles = [0.0]
        self.couch_angles = [0.0]
        self.iso_center = None

        super().__init__(pln)

    def _initialize(self):
        super()._initialize()

        self.gantry_angles = np.atleast_1d(np.asarray(self.gantry_angles, dtype=float)).tolist()
        self.couch_angles = np.atleast_1d(np.asarray(self.couch_angles, dtype=float)).tolist()

        # checks consistency before anything is computed
        _ = self.num_of_beams

    def _get_iso_centers(self) -> np.ndarray:
        """Isocenter for each beam (n x 3)."""
        if self.iso_center is None:
            iso_center = self._cst.target_center_of_mass().reshape((1, 3))
        else:
            iso_center = np.asarray(self.iso_center, dtype=np.float64)
            if iso_center.size % 3 != 0:
                raise ConfigurationError(
                    "Iso center needs to have three coordinates (1x3 array) "
                    "or a set of 3D coordinates for each beam (nx3 array)."
                )
            iso_center = iso_center.reshape((-1, 3))

        if iso_center.shape[0] == 1:
            iso_center = np.repeat(iso_center, self.num_of_beams, axis=0)

        if iso_center.shape[0] != self.num_of_beams:
            raise ConfigurationError(
                f"Got {iso_center.shape[0]} isocenters for {self.num_of_beams} beams."
            )

        return iso_center

    def _create_beam(self, beam_ix: int, iso_center: np.ndarray) -> dict[str, Any]:
        """Meta information of a single beam."""
        beam = {
            "gantry_angle": self.gantry_angles[beam_ix],
            "couch_angle": self.couch_angles[beam_ix],
            "radiation_mode": self.radiation_mode,
            "sad": self.machine.sad,
            "iso_center": iso_center,
            "machine": self.machine.name,
            "source_point_bev": np.array([0.0, -self.machine.sad, 0.0], dtype=float),
        }

        # Rotation matrix in LPS rotating the BEV coordinates into the patient system
        rotation_matrix = lps.get_beam_rotation_matrix(beam["gantry_angle"], beam["couch_angle"])
        beam["source_point"] = rotation_matrix @ beam["source_point_bev"]

        return beam

    def _create_rays(self, beam: dict[str, Any], beam_ix: int) -> list[dict[str, Any]]:
        """Create the rays of a beam."""
        return []

    def _generate_source_geometry(self) -> list[dict[str, Any]]:
        """Generate the beams and their rays."""

        iso_centers = self._get_iso_centers()

        stf = []
        with logging_redirect_tqdm():
            for i in tqdm(range(self.num_of_beams), desc="Beam", unit="b", leave=False):
                logger.info(
                    "Beam %d: gantry %g°, couch %g°",
                    i,
                    self.gantry_angles[i],
                    self.couch_angles[i],
                )
                beam = self._create_beam(i, iso_centers[i])
                beam["rays"] = self._create_rays(beam, i)
                logger.info("Beam %d: %d rays", i, len(beam["rays"]))
                stf.append(beam)

        return stf


class StfGeneratorExternalBeamRayBixel(StfGeneratorExternalBeam):
    """
    Base class for ray-bixel-based geometry.

    Rays are placed on a regular grid in the isocenter plane covering the
    projection of the target.

    Attributes
    ----------
    bixel_width : float
        The bixel width (beamlet / spot spacing).
    ssd_density_threshold : float
        Density above which a voxel counts as patient surface for the SSD.
    """

    bixel_width: float
    ssd_density_threshold: float

    def __init__(self, pln: Plan = None):
        self.bixel_width = 5.0
        self.ssd_density_threshold = 0.05

        super().__init__(pln)

    def _computed_target_margin(self) -> float:
        """Target margin to apply for beamlet placing."""
        return self.bixel_width

    def _initialize(self):
        try:
            bixel_width = float(self.bixel_width)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Bixel width (spot distance) needs to be a number, got {self.bixel_width!r}"
            ) from exc

        if not math.isfinite(bixel_width) or bixel_width <= 0.0:
            raise ConfigurationError(
                "Bixel width (spot distance) needs to be a real number [mm] larger than zero."
            )
        self.bixel_width = bixel_width

        super()._initialize()

    def _create_beam(self, beam_ix: int, iso_center: np.ndarray) -> dict[str, Any]:
        beam = super()._create_beam(beam_ix, iso_center)
        beam["bixel_width"] = self.bixel_width
        return beam

    def _create_rays(self, beam: dict[str, Any], beam_ix: int) -> list[dict[str, Any]]:
        """Get the rays on a beam with their positions."""

        ray_pos = self._generate_ray_positions_in_isocenter_plane(beam)

        rotation_matrix = lps.get_beam_rotation_matrix(beam["gantry_angle"], beam["couch_angle"])

        return [
            {
                "ray_pos_bev": ray_pos_bev,
                "ray_pos": rotation_matrix @ ray_pos_bev,
                "target_point_bev": 2.0 * ray_pos_bev - beam["source_point_bev"],
                "target_point": rotation_matrix @ (2.0 * ray_pos_bev - beam["source_point_bev"]),
            }
            for ray_pos_bev in ray_pos
        ]

    def _generate_ray_positions_in_isocenter_plane(self, beam: dict[str, Any]) -> np.ndarray:
        """
        Generate the ray positions (n x 3, BEV) in the isocenter plane.

        Target voxels are projected onto the isocenter plane and snapped to
        the bixel grid. If the bixel width is finer than the CT resolution,
        the grid positions are padded with their neighbors.
        """

        sad = beam["sad"]
        bw = beam["bixel_width"]

        bev_coords = lps.transform_patient_to_bev(
            self._target_voxel_coordinates,
            beam["gantry_angle"],
            beam["couch_angle"],
            beam["iso_center"],
        )

        # similar triangles onto the isocenter plane
        bev_coords_isoplane = sad * bev_coords / (sad + bev_coords[:, [1]])
        bev_coords_isoplane[:, 1] = 0.0

        ray_pos = np.unique(bw * np.round(bev_coords_isoplane / bw), axis=0)

        max_ct_resolution = float(np.max(self._ct.grid.resolution_vector))
        if bw < max_ct_resolution:
            f = math.ceil(max_ct_resolution / bw)
            offsets = np.array(
                [
                    (j * bw, 0.0, k * bw)
                    for j in range(-f, f + 1)
                    for k in range(-f, f + 1)
                    if abs(j) + abs(k) > 0
                ]
            )
            padded = (ray_pos[:, None, :] + offsets[None, :, :]).reshape((-1, 3))
            ray_pos = np.unique(np.vstack((ray_pos, padded)), axis=0)

        # -0.0 and 0.0 are the same position
        ray_pos = ray_pos + 0.0

        return ray_pos

    def _trace_rays(
        self, beam: dict[str, Any], rays: list[dict[str, Any]], cubes: list[sitk.Image]
    ) -> list[tuple[np.ndarray, np.ndarray, list[np.ndarray], float]]:
        """
        Trace all rays of a beam from the source to their target points.

        Returns
        -------
        list[tuple]
            For each ray the entry alphas, path lengths and sampled values
            (one array per cube) of all voxels within the grid, and the
            source to target distance.
        """
        if not rays:
            return []

        rt = RayTracerSiddon(cubes)
        target_points = np.array([ray["target_point"] for ray in rays], dtype=np.float64)
        alphas, lengths, rhos, d12, ix = rt.trace_rays(
            beam["iso_center"], beam["source_point"].reshape((1, 3)), target_points
        )

        traced = []
        for r in range(len(rays)):
            valid = np.flatnonzero(ix[r] >= 0)
            traced.append(
                (
                    alphas[r, valid],
                    lengths[r, valid],
                    [rho[r, valid] for rho in rhos],
                    float(d12[r, 0]),
                )
            )
        return traced

    def _compute_ssd(
        self, alphas: np.ndarray, density: np.ndarray, d12: float, beam_ix: int, ray_ix: int
    ) -> Optional[float]:
        """
        Source to surface distance of a traced ray.

        The surface is the entry of the first voxel with a density above
        ``ssd_density_threshold``. Returns None if the ray never reaches it.
        """
        ix_ssd = np.flatnonzero(density > self.ssd_density_threshold)
        if ix_ssd.size == 0:
            return None

        if ix_ssd[0] == 0:
            self._warn(
                f"Surface for SSD calculation starts directly in first voxel of CT "
                f"(beam {beam_ix}, ray {ray_ix})"
            )

        return float(d12 * alphas[ix_ssd[0]])

    def _fill_missing_ssd(self, rays: list[dict[str, Any]], beam_ix: int):
        """Rays without a surface take the SSD of their closest neighbor."""
        has_ssd = [r for r, ray in enumerate(rays) if ray.get("ssd") is not None]
        if not has_ssd:
            return

        positions = np.array([ray["ray_pos_bev"] for ray in rays])
        for r, ray in enumerate(rays):
            if ray.get("ssd") is not None:
                continue
            dist = np.linalg.norm(positions[has_ssd] - positions[r], axis=1)
            closest = has_ssd[int(np.argmin(dist))]
            ray["ssd"] = rays[closest]["ssd"]
            self._warn(
                f"Could not determine SSD for ray {r} of beam {beam_ix}. "
                f"Using SSD of closest ray {closest}."
            )

from numba import njit, prange
import numpy as np


@njit(parallel=True, nogil=True, cache=True)
def fast_spatial_circle_lookup(
    mesh_x: np.ndarray, mesh_z: np.ndarray, lookup_pos: np.ndarray, radius: float
) -> np.ndarray:
    """Lookup all points of a meshgrid lying within a circle around any reference position.

    Parameters
    ----------
    mesh_x : np.ndarray
        The x-coordinates of the meshgrid (NxN)
    mesh_z : np.ndarray
        The z-coordinates of the meshgrid (NxN)
    lookup_pos : np.ndarray
        The reference positions to lookup (Mx3), only x and z are used
    radius : float
        The radius of the circle.

    Returns
    -------
    np.ndarray
        Boolean mask of the meshgrid shape.
    """
    flat_x = mesh_x.ravel()
    flat_z = mesh_z.ravel()
    radius_sq = radius * radius
    candidate_ray_mx = np.zeros(flat_x.size, dtype=np.bool_)
    for p in prange(flat_x.size):
        for i in range(lookup_pos.shape[0]):
            dx = flat_x[p] - lookup_pos[i, 0]
            dz = flat_z[p] - lookup_pos[i, 2]
            if dx * dx + dz * dz <= radius_sq:
                candidate_ray_mx[p] = True
                break
    return candidate_ray_mx.reshape(mesh_x.shape)

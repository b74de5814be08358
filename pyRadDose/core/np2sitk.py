"""Helpers for conversion between numpy and SimpleITK."""

import SimpleITK as sitk
import numpy as np
from ._grids import Grid


def sitk_mask_to_linear_indices(mask: sitk.Image) -> np.ndarray:
    """
    Convert a SimpleITK mask to linear indices.

    Parameters
    ----------
    mask : sitk.Image
        The SimpleITK image mask to be converted.

    Returns
    -------
    np.ndarray
        A sorted 1D numpy array of linear (C-ordered) indices where the mask
        is non-zero.
    """

    arr = sitk.GetArrayViewFromImage(mask)
    return np.flatnonzero(arr)


def linear_indices_to_sitk_mask(indices: np.ndarray, ref_image: sitk.Image) -> sitk.Image:
    """
    Convert linear indices to a SimpleITK mask.

    Parameters
    ----------
    indices : np.ndarray
        A 1D numpy array of linear (C-ordered) indices.
    ref_image : sitk.Image
        The reference image on which the mask is defined.

    Returns
    -------
    sitk.Image
        A uint8 SimpleITK image with the indices set to one.
    """

    arr = np.zeros_like(sitk.GetArrayViewFromImage(ref_image), dtype=np.uint8)
    indices = np.asarray(indices, dtype=np.int64)
    if indices.size > 0 and (indices.min() < 0 or indices.max() >= arr.size):
        raise IndexError("Linear indices exceed the reference image")

    arr.flat[indices] = 1

    mask = sitk.GetImageFromArray(arr)
    mask.CopyInformation(ref_image)

    return mask


def linear_indices_to_voxel_subscripts(indices: np.ndarray, grid: Grid) -> np.ndarray:
    """Convert linear indices to (i, j, k) voxel subscripts, returned as 3 x N."""

    # this is a manual reimplementation of np.unravel_index
    # to avoid the overhead of creating a tuple of arrays
    nx, ny, _ = grid.dimensions

    v = np.empty((3, np.asarray(indices).size), dtype=np.int64)
    tmp, v[0] = np.divmod(indices, nx)
    v[2], v[1] = np.divmod(tmp, ny)
    return v


def linear_indices_to_grid_coordinates(
    indices: np.ndarray,
    grid: Grid,
    dtype: np.dtype = np.float64,
) -> np.ndarray:
    """
    Convert linear indices to world coordinates.

    Parameters
    ----------
    indices : np.ndarray
        A 1D numpy array of linear indices.
    grid : Grid
        The image grid on which the indices lie.
    dtype : np.dtype, optional
        The data type of the output coordinates. Default is np.float64.

    Returns
    -------
    np.ndarray
        N x 3 array of LPS coordinates of the voxel centers.
    """

    v = linear_indices_to_voxel_subscripts(indices, grid).astype(dtype)

    spacing_diag = np.diag(grid.resolution_vector).astype(dtype)
    origin = grid.origin.astype(dtype)

    return origin + np.matmul(np.matmul(grid.direction, spacing_diag), v).T

"""Geometry functions for the LPS system following IEC 61217."""

import numpy as np


def get_gantry_rotation_matrix(gantry_angle):
    """
    Calculate the rotation matrix for the gantry.

    Represents an active, counter-clockwise rotation around z with
    pre-multiplication of the matrix (R*x).

    Parameters
    ----------
    gantry_angle : float
        The angle of gantry rotation in degrees.

    Returns
    -------
    numpy.ndarray
        The rotation matrix.
    """

    gantry_angle = np.deg2rad(gantry_angle)

    return np.array(
        [
            [np.cos(gantry_angle), -np.sin(gantry_angle), 0.0],
            [np.sin(gantry_angle), np.cos(gantry_angle), 0.0],
            [0.0, 0.0, 1.0],
        ]
    )


def get_couch_rotation_matrix(couch_angle):
    """
    Calculate the rotation matrix for the couch.

    Represents an active, counter-clockwise rotation around y with
    pre-multiplication of the matrix (R*x).

    Parameters
    ----------
    couch_angle : float
        The angle of couch rotation in degrees.

    Returns
    -------
    numpy.ndarray
        The rotation matrix.
    """

    couch_angle = np.deg2rad(couch_angle)

    return np.array(
        [
            [np.cos(couch_angle), 0.0, np.sin(couch_angle)],
            [0.0, 1.0, 0.0],
            [-np.sin(couch_angle), 0.0, np.cos(couch_angle)],
        ]
    )


def get_beam_rotation_matrix(gantry_angle, couch_angle):
    """
    Calculate the combined rotation matrix for gantry and couch angles.

    The matrix maps beam's eye view (BEV) coordinates to patient
    coordinates when pre-multiplied (R*x_bev). Its transpose maps patient
    coordinates into the BEV system.

    Parameters
    ----------
    gantry_angle : float
        The angle of gantry rotation in degrees.
    couch_angle : float
        The angle of couch rotation in degrees.

    Returns
    -------
    numpy.ndarray
        The rotation matrix.

    Notes
    -----
    Gantry rotation is physically an active rotation of a beam vector around
    the isocenter, couch rotation is a passive rotation of the patient system
    around the isocenter. The couch rotation is thus applied after the gantry.

    Examples
    --------
    >>> get_beam_rotation_matrix(90, 45)
    array([[ 0.        , -0.70710678,  0.70710678],
           [ 1.        ,  0.        ,  0.        ],
           [ 0.        ,  0.70710678,  0.70710678]])
    """

    r_gantry = get_gantry_rotation_matrix(gantry_angle)
    r_couch = get_couch_rotation_matrix(couch_angle)

    return r_couch @ r_gantry


def transform_patient_to_bev(points, gantry_angle, couch_angle, isocenter=None):
    """
    Transform patient (LPS) coordinates into the beam's eye view.

    Parameters
    ----------
    points : array_like
        N x 3 (or 3,) patient coordinates in mm.
    gantry_angle : float
        Gantry angle in degrees.
    couch_angle : float
        Couch angle in degrees.
    isocenter : array_like, optional
        Isocenter in patient coordinates. Defaults to the origin.

    Returns
    -------
    numpy.ndarray
        Coordinates in the BEV system centered at the isocenter.
    """
    points = np.asarray(points, dtype=np.float64)
    if isocenter is not None:
        points = points - np.asarray(isocenter, dtype=np.float64)

    # row vectors, so right-multiplication with R equals R.T @ x
    return points @ get_beam_rotation_matrix(gantry_angle, couch_angle)


def transform_bev_to_patient(points, gantry_angle, couch_angle, isocenter=None):
    """
    Transform beam's eye view coordinates back to patient (LPS) coordinates.

    Exact inverse of :func:`transform_patient_to_bev`.
    """
    points = np.asarray(points, dtype=np.float64)
    patient = points @ get_beam_rotation_matrix(gantry_angle, couch_angle).T
    if isocenter is not None:
        patient = patient + np.asarray(isocenter, dtype=np.float64)
    return patient

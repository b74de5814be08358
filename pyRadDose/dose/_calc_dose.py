"""Convenience entry points for dose calculation."""

from typing import Any, Callable, Optional, Union

import numpy as np

from ..stf import SteeringInformation
from ..ct import CT
from ..cst import StructureSet
from ..plan import validate_pln, Plan
from ..dij import Dij

from .engines import get_engine


def calc_dose_influence(
    ct: Union[CT, dict],
    cst: Union[StructureSet, dict],
    stf: Union[SteeringInformation, dict],
    pln: Union[Plan, dict],
    cancel: Union[Callable[[], bool], Any, None] = None,
) -> Dij:
    """
    Calculate the dose influence matrix.

    Parameters
    ----------
    ct : CT
        A CT object.
    cst : StructureSet
        A StructureSet object.
    stf : SteeringInformation
        A SteeringInformation object.
    pln : Plan
        The plan selecting and configuring the dose engine.
    cancel : threading.Event or callable, optional
        Cancellation flag checked between beams.

    Returns
    -------
    Dij
        A Dij object.
    """

    pln = validate_pln(pln)
    engine = get_engine(pln)

    return engine.calc_dose_influence(ct, cst, stf, cancel=cancel)


def calc_dose_forward(
    ct: Union[CT, dict],
    cst: Union[StructureSet, dict],
    stf: Union[SteeringInformation, dict],
    pln: Union[Plan, dict],
    weights: Optional[np.ndarray] = None,
) -> Dij:
    """
    Calculate the dose of weighted beamlets.

    Parameters
    ----------
    ct : CT
        A CT object.
    cst : StructureSet
        A StructureSet object.
    stf : SteeringInformation
        A SteeringInformation object.
    pln : Plan
        The plan selecting and configuring the dose engine.
    weights : np.ndarray
        The weights for the beamlets. Defaults to the weights in the stf.

    Returns
    -------
    Dij
        A Dij object with a single column.
    """
    pln = validate_pln(pln)
    engine = get_engine(pln)

    return engine.calc_dose_forward(ct, cst, stf, weights)

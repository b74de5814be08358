from typing import Union

from ..ct import CT, validate_ct
from ..cst import StructureSet, validate_cst
from ..plan import Plan, validate_pln
from ._steeringinformation import SteeringInformation
from .generators import get_generator


def generate_stf(
    ct: Union[CT, dict], cst: Union[StructureSet, dict], pln: Union[Plan, dict]
) -> SteeringInformation:
    """
    Generate the steering information for a plan.

    The generator is chosen from the plan's radiation mode (and optionally
    ``prop_stf["generator"]``).
    """
    ct = validate_ct(ct)
    cst = validate_cst(cst, ct=ct)
    pln = validate_pln(pln)

    stfgen = get_generator(pln)

    return stfgen.generate(ct, cst)

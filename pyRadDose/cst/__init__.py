from ._voi import VOI, OAR, Target, HelperVOI, ExternalVOI, create_voi, validate_voi
from ._cst import StructureSet, create_cst, validate_cst

__all__ = [
    "VOI",
    "OAR",
    "Target",
    "HelperVOI",
    "ExternalVOI",
    "create_voi",
    "validate_voi",
    "StructureSet",
    "create_cst",
    "validate_cst",
]

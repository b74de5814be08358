import warnings
import logging
from typing import Union, Type

from ...core import ConfigurationError
from ...plan import validate_pln, Plan
from ._base import StfGeneratorBase


STF_GENERATORS = {}

logger = logging.getLogger(__name__)


def register_generator(generator_cls: Type[StfGeneratorBase]) -> None:
    """
    Register a new stf generator for irradiation geometry.

    Parameters
    ----------
    generator_cls : type
        A Generator class.
    """
    if not issubclass(generator_cls, StfGeneratorBase):
        raise ValueError("Generator must be a subclass of StfGeneratorBase.")

    for attr in ("short_name", "name", "possible_radiation_modes"):
        if getattr(generator_cls, attr, None) is None:
            raise ValueError(f"Generator must have a '{attr}' attribute.")

    generator_name = generator_cls.short_name
    if generator_name in STF_GENERATORS:
        warnings.warn(f"Generator '{generator_name}' is already registered.")
    else:
        STF_GENERATORS[generator_name] = generator_cls


def get_available_generators(pln: Union[Plan, dict]) -> dict[str, Type[StfGeneratorBase]]:
    """
    Get the available stf generators for the plan's radiation mode.

    Returns
    -------
    dict
        Generator classes by short name.
    """
    pln = validate_pln(pln)
    return {
        name: cls
        for name, cls in STF_GENERATORS.items()
        if pln.radiation_mode in cls.possible_radiation_modes
    }


def get_generator(pln: Union[Plan, dict]) -> StfGeneratorBase:
    """
    Get the appropriate generator based on the plan.

    The generator can be chosen with ``prop_stf["generator"]``. Otherwise the
    first generator supporting the radiation mode is used.

    Returns
    -------
    StfGeneratorBase
        The configured generator.
    """
    pln = validate_pln(pln)

    generators = get_available_generators(pln)
    if len(generators) <= 0:
        raise ConfigurationError(
            f"No generator available for radiation mode '{pln.radiation_mode}'."
        )

    generator_names = list(generators.keys())

    if "generator" in pln.prop_stf:
        if pln.prop_stf["generator"] in generators:
            return generators[pln.prop_stf["generator"]](pln)
        warnings.warn(f"Generator '{pln.prop_stf['generator']}' not available for Plan.")

    logger.info("Using generator %s for %s", generator_names[0], pln.radiation_mode)
    return generators[generator_names[0]](pln)

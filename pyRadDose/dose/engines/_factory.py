"""Registry and factory of dose engines."""

import warnings
import logging
from typing import Union, Type

from ...core import ConfigurationError
from ...plan import validate_pln, Plan
from ._base import DoseEngineBase

DOSE_ENGINES = {}

logger = logging.getLogger(__name__)


def register_engine(engine_cls: Type[DoseEngineBase]) -> None:
    """
    Register a new engine.

    Parameters
    ----------
    engine_cls : type
        A Dose Engine class.
    """
    if not issubclass(engine_cls, DoseEngineBase):
        raise ValueError("Engine must be a subclass of DoseEngineBase.")

    if getattr(engine_cls, "short_name", None) is None:
        raise ValueError("Engine must have a 'short_name' attribute.")

    if getattr(engine_cls, "name", None) is None:
        raise ValueError("Engine must have a 'name' attribute.")

    if engine_cls.possible_radiation_modes in (None, NotImplemented):
        raise ValueError("Engine must have a 'possible_radiation_modes' attribute.")

    engine_name = engine_cls.short_name
    if engine_name in DOSE_ENGINES:
        warnings.warn(f"Engine '{engine_name}' is already registered.")
    else:
        DOSE_ENGINES[engine_name] = engine_cls


def get_available_engines(pln: Union[Plan, dict]) -> dict[str, Type[DoseEngineBase]]:
    """
    Get the engines supporting the radiation mode of the plan.

    Parameters
    ----------
    pln : Union[Plan,dict]
        A Plan object.

    Returns
    -------
    dict
        Available engine classes by short name.
    """
    pln = validate_pln(pln)
    return {
        name: cls
        for name, cls in DOSE_ENGINES.items()
        if pln.radiation_mode in cls.possible_radiation_modes
    }


def get_engine(pln: Union[Plan, dict]) -> DoseEngineBase:
    """
    Factory function to get the appropriate engine based on the plan.

    The engine named in ``pln.prop_dose_calc["engine"]`` (short name or full
    name) is used if it supports the radiation mode. Otherwise the first
    available engine is used and a warning is issued.

    Parameters
    ----------
    pln : Plan
        A Plan object.

    Returns
    -------
    DoseEngineBase
        A configured dose engine.

    Raises
    ------
    ConfigurationError
        If no engine supports the radiation mode of the plan.
    """
    pln = validate_pln(pln)

    engines = get_available_engines(pln)
    if len(engines) <= 0:
        raise ConfigurationError(
            f"No engine available for radiation mode '{pln.radiation_mode}'."
        )

    requested = pln.prop_dose_calc.get("engine")
    if requested:
        for engine_cls in engines.values():
            if requested in (engine_cls.short_name, engine_cls.name):
                return engine_cls(pln)
        message = f"Engine '{requested}' not available for Plan."
    else:
        message = "No engine specified in Plan."

    # fall back to the first available engine
    engine_cls = next(iter(engines.values()))
    message += f" Using first available engine {engine_cls.short_name}."
    warnings.warn(message, UserWarning, stacklevel=2)

    prop_dose_calc = {k: v for k, v in pln.prop_dose_calc.items() if k != "engine"}
    engine = engine_cls(pln.model_copy(update={"prop_dose_calc": prop_dose_calc}))
    engine._config_warnings.append(message)
    return engine

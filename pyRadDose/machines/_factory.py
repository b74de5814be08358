"""Factory methods to manage available Machine classes."""

from typing import Optional, Type
import warnings
import logging

from ._base import Machine

logger = logging.getLogger(__name__)


MACHINES: dict[str, Type[Machine]] = {}


def register_machine(machine_cls: Type[Machine]) -> None:
    """
    Register a machine class for all its possible radiation modes.

    Parameters
    ----------
    machine_cls : type
        A Machine class.
    """
    if not issubclass(machine_cls, Machine):
        raise ValueError("Machine must be a subclass of Machine.")

    radiation_modes = machine_cls._possible_radiation_modes
    if not radiation_modes:
        raise ValueError("Machine must define the '_possible_radiation_modes' class variable.")

    for mode in radiation_modes:
        if mode in MACHINES:
            warnings.warn(
                f"Machine '{mode}' is already registered. Make sure radiation_mode is unique in "
                "all machine classes."
            )
        MACHINES[mode] = machine_cls


def get_machine(radiation_mode: Optional[str] = None) -> Optional[Type[Machine]]:
    """Retrieve the registered Machine class for a radiation mode."""
    return MACHINES.get(radiation_mode)

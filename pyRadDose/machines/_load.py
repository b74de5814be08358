"""In-memory registry of named machine base data profiles."""

from typing import Any, Union
import logging

from ..core import MissingDataError
from ._base import Machine
from ._validate import validate_machine

logger = logging.getLogger(__name__)

_MACHINE_DATA: dict[tuple[str, str], Machine] = {}


def register_machine_data(data: Union[Machine, dict[str, Any]]) -> Machine:
    """
    Register a base data profile under its radiation mode and name.

    Parameters
    ----------
    data : Machine or dict
        The machine (or its dictionary representation).

    Returns
    -------
    Machine
        The validated and registered machine.
    """
    machine = validate_machine(data)
    key = (machine.radiation_mode, machine.name)
    if key in _MACHINE_DATA:
        logger.info("Replacing registered machine %s_%s", *key)
    _MACHINE_DATA[key] = machine
    return machine


def unregister_machine_data(radiation_mode: str, machine_name: str) -> None:
    """Remove a registered base data profile."""
    _MACHINE_DATA.pop((radiation_mode, machine_name), None)


def available_machines() -> list[tuple[str, str]]:
    """List all registered (radiation_mode, name) pairs."""
    return sorted(_MACHINE_DATA)


def load_from_name(radiation_mode: str, machine_name: str) -> Machine:
    """
    Resolve a registered base data profile.

    Raises
    ------
    MissingDataError
        If no profile is registered for the radiation mode and name.
    """
    try:
        return _MACHINE_DATA[(radiation_mode, machine_name)]
    except KeyError as exc:
        raise MissingDataError(
            f"Could not find the following machine: {radiation_mode}_{machine_name}"
        ) from exc


def load_machine(pln: Any) -> Machine:
    """Resolve the machine referenced by a plan (or plan-like object)."""
    return load_from_name(pln.radiation_mode, pln.machine)

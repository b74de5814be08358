"""Machine definitions for external beam radiotherapy."""

from ._base import Machine, ExternalBeamMachine
from ._factory import register_machine, get_machine
from ._photons import PhotonLINAC
from ._ions import IonAccelerator, IonBeamFocus, IonPencilBeamKernel, LateralCutOff
from ._validate import validate_machine
from ._load import (
    register_machine_data,
    unregister_machine_data,
    available_machines,
    load_from_name,
    load_machine,
)

register_machine(PhotonLINAC)
register_machine(IonAccelerator)

__all__ = [
    "Machine",
    "ExternalBeamMachine",
    "PhotonLINAC",
    "IonAccelerator",
    "IonBeamFocus",
    "IonPencilBeamKernel",
    "LateralCutOff",
    "register_machine",
    "get_machine",
    "validate_machine",
    "register_machine_data",
    "unregister_machine_data",
    "available_machines",
    "load_from_name",
    "load_machine",
]

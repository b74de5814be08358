"""
Contains the definition of the Plan class and its derived classes.

Available specialized Plan classes are PhotonPlan and IonPlan.
"""

from abc import ABC
from typing import Dict, Any, List, Union, ClassVar
from copy import deepcopy

from pydantic import (
    Field,
    field_validator,
)
from pydantic.alias_generators import to_snake

from ..core import PyRadDoseBaseModel, ConfigurationError


class Plan(PyRadDoseBaseModel, ABC):
    """
    Abstract base class for a treatment plan.

    Attributes
    ----------
    prop_stf : Dict[str, Any]
        Properties of the steering generator.
    prop_dose_calc : Dict[str, Any]
        Properties of the dose calculation.
    num_of_fractions : int
        Number of fractions in the plan.
    machine : str
        Machine used for the plan.
    prescribed_dose : float
        Prescribed dose for the plan. Serves mainly as normalization value.
    bio_optimization : str
        Biological model requested for the dose calculation ("none",
        "effect" or "RBExD").
    radiation_mode : str
        Will return the radiation modality (e.g. photons or protons).
    """

    prop_stf: Dict[str, Any] = Field(default_factory=dict)
    prop_dose_calc: Dict[str, Any] = Field(default_factory=dict)
    num_of_fractions: int = Field(default=30, gt=0)
    machine: Union[Dict, str] = Field(default="Generic")
    prescribed_dose: float = Field(default=60.0, gt=0.0)
    bio_optimization: str = Field(default="none", pattern="^(none|effect|RBExD)$")

    # Abstract property handled by below validator
    radiation_mode: str

    @field_validator("radiation_mode", mode="after")
    @classmethod
    def validate_radiation_mode(cls, v: str) -> str:
        """
        Validate the radiation mode.

        Raises
        ------
        NotImplementedError
            This method should be overridden in derived classes.
        """
        raise NotImplementedError("This method should be overridden in derived classes")

    @field_validator("prop_stf", "prop_dose_calc", mode="after")
    @classmethod
    def validate_prop(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate the workflow property dictionaries.

        Will try to convert to snake_case if camelCase is used.

        Parameters
        ----------
        v : Dict[str, Any]
            The properties of the plan to be validated.

        Returns
        -------
        Dict[str, Any]
            The validated properties of the plan.
        """

        if not v:
            return {}

        return {to_snake(k): val for k, val in v.items()}

    @property
    def calc_bio_dose(self) -> bool:
        """Whether biological dose channels are requested."""
        return self.bio_optimization != "none"


class PhotonPlan(Plan):
    """
    Class for a photon treatment plan.

    Attributes
    ----------
    Inherits all attributes from Plan.
    """

    radiation_mode: str = "photons"

    @field_validator("radiation_mode", mode="after")
    @classmethod
    def validate_radiation_mode(cls, v: str) -> str:
        """Validate the radiation mode for a PhotonPlan."""
        if v != "photons":
            raise ValueError('radiation_mode for PhotonPlan must be "photons"')
        return v


class IonPlan(Plan):
    """
    Class for an ion treatment plan.

    The radiation mode names the ion type.
    """

    available_radiation_modes: ClassVar[List[str]] = ["protons", "helium", "carbon"]

    radiation_mode: str = Field(
        default="protons", pattern="^(protons|helium|carbon)$", validate_default=True
    )

    @field_validator("radiation_mode", mode="after")
    @classmethod
    def validate_radiation_mode(cls, v: str) -> str:
        """
        Validate the radiation mode for IonPlan.

        Raises
        ------
        ValueError
            If the radiation mode is not one of the available radiation modes.
        """
        if v not in cls.available_radiation_modes:
            raise ValueError(
                f"radiation_mode for IonPlan must be one of {cls.available_radiation_modes}"
            )
        return v


def create_pln(data: Union[Dict[str, Any], Plan, None] = None, **kwargs) -> Plan:
    """
    Create a Plan object (factory function).

    Parameters
    ----------
    data : Union[Dict[str, Any], None]
        Dictionary containing the data to create the Plan object.
    **kwargs
        Arbitrary keyword arguments.

    Returns
    -------
    Plan
        A Plan object.

    Raises
    ------
    ConfigurationError
        If the radiation mode is unknown or empty.
    """
    if isinstance(data, Plan):
        return data

    if data:
        data = deepcopy(data)
        radiation_mode = data.get("radiation_mode", data.get("radiationMode"))
    else:
        data = kwargs
        radiation_mode = kwargs.get("radiation_mode", kwargs.get("radiationMode", ""))

    if radiation_mode == "photons":
        return PhotonPlan.model_validate(data)
    if radiation_mode in IonPlan.available_radiation_modes:
        return IonPlan.model_validate(data)
    raise ConfigurationError(f"Unknown radiation mode: {radiation_mode}")


def validate_pln(plan: Union[Dict[str, Any], Plan, None] = None, **kwargs) -> Plan:
    """
    Validate and create a Plan object.

    Synonym to create_pln but should be used in validation context.
    """
    return create_pln(plan, **kwargs)

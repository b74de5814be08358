"""Treatment plan data structures and validation."""

from ._plans import Plan, PhotonPlan, IonPlan, create_pln, validate_pln

__all__ = ["Plan", "PhotonPlan", "IonPlan", "create_pln", "validate_pln"]

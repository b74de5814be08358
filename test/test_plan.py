import pytest
from pydantic import ValidationError

from pyRadDose.core import ConfigurationError
from pyRadDose.plan import create_pln, validate_pln, PhotonPlan, IonPlan


def test_create_pln_no_args():
    with pytest.raises(ConfigurationError):
        create_pln()


def test_ion_pln_empty_constructor():
    plan = IonPlan()
    assert plan.radiation_mode == "protons"
    assert plan.machine == "Generic"
    assert plan.bio_optimization == "none"
    assert not plan.calc_bio_dose


def test_photon_pln_empty_constructor():
    plan = PhotonPlan()
    assert plan.radiation_mode == "photons"


def test_create_pln_dict_photons():
    plan = create_pln({"radiation_mode": "photons"})
    assert isinstance(plan, PhotonPlan)
    assert plan.radiation_mode == "photons"


def test_create_pln_from_plan():
    plan = PhotonPlan()
    assert create_pln(plan) is plan

    plan = IonPlan()
    assert validate_pln(plan) is plan


@pytest.mark.parametrize("radiation_mode", ["protons", "helium", "carbon"])
def test_create_pln_dict_ions(radiation_mode):
    plan = create_pln({"radiation_mode": radiation_mode})
    assert isinstance(plan, IonPlan)
    assert plan.radiation_mode == radiation_mode


def test_create_pln_camel_case():
    plan = create_pln(
        {
            "radiationMode": "carbon",
            "numOfFractions": 5,
            "bioOptimization": "effect",
            "propStf": {"gantryAngles": [0.0, 90.0], "bixelWidth": 3.0},
        }
    )
    assert isinstance(plan, IonPlan)
    assert plan.num_of_fractions == 5
    assert plan.calc_bio_dose
    assert plan.prop_stf == {"gantry_angles": [0.0, 90.0], "bixel_width": 3.0}


def test_create_pln_kwargs():
    plan = create_pln(radiation_mode="protons", machine="NoLET")
    assert isinstance(plan, IonPlan)
    assert plan.machine == "NoLET"


def test_create_pln_unknown_mode():
    with pytest.raises(ConfigurationError):
        create_pln({"radiation_mode": "neutrons"})


def test_create_pln_does_not_alter_input():
    data = {"radiation_mode": "protons", "prop_stf": {"bixelWidth": 5.0}}
    create_pln(data)
    assert data["prop_stf"] == {"bixelWidth": 5.0}


def test_ion_plan_invalid_mode():
    with pytest.raises(ValidationError):
        IonPlan(radiation_mode="photons")


def test_photon_plan_invalid_mode():
    with pytest.raises(ValidationError):
        PhotonPlan(radiation_mode="protons")


def test_plan_invalid_bio_optimization():
    with pytest.raises(ValidationError):
        IonPlan(bio_optimization="LEM")


def test_plan_invalid_fractions():
    with pytest.raises(ValidationError):
        IonPlan(num_of_fractions=0)

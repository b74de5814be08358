import pytest
import numpy as np

from pyRadDose.core import ConfigurationError, MissingDataError
from pyRadDose.dose.engines import ParticleHongPencilBeamEngine
from pyRadDose.dose.engines._base_pencilbeam_particle import CONVERSION_FACTOR

SSD = 9994.5
# kernel sigma at 5.5 mm plus the initial width of the first focus
SIGMA_SQ = 1.0 + 0.775**2


@pytest.fixture
def engine():
    return ParticleHongPencilBeamEngine()


@pytest.fixture
def proton_machine():
    return ParticleHongPencilBeamEngine.load_machine("protons", "Generic")


def test_engine_constants(engine):
    assert engine.short_name == "HongPB"
    assert engine.name == "Hong Particle Pencil-Beam"
    assert engine.possible_radiation_modes == ["protons", "helium", "carbon"]


def test_engine_defaults(engine):
    assert engine.calc_let is False
    assert engine.calc_bio_dose is False
    assert engine.air_offset_correction is True
    assert engine.cut_off_method == "integral"
    assert engine.dosimetric_lateral_cutoff == pytest.approx(0.995)
    assert engine.geometric_lateral_cutoff == 50
    assert engine.keep_rad_depth_cubes is False


def test_dose_kernel(engine, proton_machine):
    dose = engine.dose_kernel(
        depths=np.array([5.5, 5.5]),
        lateral_sq=np.array([0.0, 4.0]),
        ssd=SSD,
        focus_ix=0,
        energy_profile=proton_machine.get_kernel_by_energy(60.0),
        machine=proton_machine,
    )

    expected = 4.0 * CONVERSION_FACTOR / (2 * np.pi * SIGMA_SQ)
    assert dose.shape == (2,)
    assert dose[0] == pytest.approx(expected)
    assert dose[1] == pytest.approx(expected * np.exp(-4.0 / (2 * SIGMA_SQ)))


def test_dose_kernel_energy_value(engine, proton_machine):
    by_kernel = engine.dose_kernel(
        [2.0, 5.5, 9.0],
        [1.0, 1.0, 1.0],
        SSD,
        1,
        proton_machine.get_kernel_by_energy(60.0),
        machine=proton_machine,
    )
    by_energy = engine.dose_kernel(
        [2.0, 5.5, 9.0], [1.0, 1.0, 1.0], SSD, 1, 60.0, machine=proton_machine
    )

    assert np.allclose(by_kernel, by_energy)
    # the Bragg peak of the 60 MeV kernel
    assert np.argmax(by_energy) == 1


def test_dose_kernel_wider_focus_lowers_central_dose(engine, proton_machine):
    narrow = engine.dose_kernel([5.5], [0.0], SSD, 0, 60.0, machine=proton_machine)
    wide = engine.dose_kernel([5.5], [0.0], SSD, 1, 60.0, machine=proton_machine)
    assert wide[0] < narrow[0]


def test_dose_kernel_without_machine(engine):
    with pytest.raises(ConfigurationError):
        engine.dose_kernel([5.5], [0.0], SSD, 0, 60.0)


def test_dose_kernel_leaves_engine_machine(engine, proton_machine):
    engine.dose_kernel([5.5], [0.0], SSD, 0, 60.0, machine=proton_machine)
    assert engine.machine is None

    # no machine from an earlier evaluation is reused
    with pytest.raises(ConfigurationError):
        engine.dose_kernel([5.5], [0.0], SSD, 0, 60.0)


def test_dose_kernel_shape_mismatch(engine, proton_machine):
    with pytest.raises(ValueError):
        engine.dose_kernel([5.5, 6.0], [0.0], SSD, 0, 60.0, machine=proton_machine)


def test_dose_kernel_missing_focus(engine, proton_machine):
    with pytest.raises(MissingDataError):
        engine.dose_kernel([5.5], [0.0], SSD, 5, 60.0, machine=proton_machine)

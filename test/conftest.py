import pytest
import numpy as np
import SimpleITK as sitk

from pyRadDose.ct import create_ct
from pyRadDose.cst import create_cst
from pyRadDose.machines import (
    register_machine_data,
    unregister_machine_data,
)
from pyRadDose.plan import IonPlan, PhotonPlan
from pyRadDose.stf import generate_stf

ION_SAD = 10000.0
KERNEL_DEPTHS = np.arange(0.0, 20.25, 0.25)
ION_ENERGIES = [50.0, 60.0, 70.0, 80.0, 90.0]
ION_PEAKS = [2.5, 5.5, 8.5, 11.5, 14.5]

# photon parameters of the tabulated tissue classes
TISSUE_ALPHA_X = [0.1, 0.3]
TISSUE_BETA_X = [0.05, 0.03]


def _synthetic_kernel(energy: float, peak_pos: float, with_bio: bool) -> dict:
    depths = KERNEL_DEPTHS
    idd = np.where(
        depths <= peak_pos + 2.0,
        1.0 + 3.0 * np.exp(-0.5 * (depths - peak_pos) ** 2),
        0.01,
    )
    kernel = {
        "energy": energy,
        "peak_pos": peak_pos,
        "offset": 0.0,
        "depths": depths,
        "idd": idd,
        "sigma": 0.5 + 0.05 * depths,
        "let": 1.0 + 0.5 * depths,
    }
    if with_bio:
        kernel["alpha_x"] = TISSUE_ALPHA_X
        kernel["beta_x"] = TISSUE_BETA_X
        kernel["alpha"] = np.outer(TISSUE_ALPHA_X, 1.0 + 0.1 * depths)
        kernel["beta"] = np.outer(TISSUE_BETA_X, np.full(depths.shape, 1.2))
    return kernel


def synthetic_ion_machine(
    radiation_mode: str = "protons",
    name: str = "Generic",
    with_bio: bool = True,
    with_let: bool = True,
) -> dict:
    """Machine data of a synthetic ion accelerator."""
    kernels = {}
    for energy, peak in zip(ION_ENERGIES, ION_PEAKS):
        kernel = _synthetic_kernel(energy, peak, with_bio)
        if not with_let:
            kernel.pop("let")
        kernels[energy] = kernel

    return {
        "radiation_mode": radiation_mode,
        "name": name,
        "sad": ION_SAD,
        "bams_to_iso_dist": 500.0,
        "fit_air_offset": 0.0,
        "energies": ION_ENERGIES,
        "peak_positions": ION_PEAKS,
        "lut_spot_size": [[0.0, 10.0], [5.0, 5.0]],
        "foci": {
            energy: [
                {"dist": [0.0, 2 * ION_SAD], "sigma": [1.0, 1.0], "fwhm_iso": 2.355},
                {"dist": [0.0, 2 * ION_SAD], "sigma": [2.5, 2.5], "fwhm_iso": 5.9},
            ]
            for energy in ION_ENERGIES
        },
        "pb_kernels": kernels,
    }


@pytest.fixture
def ion_machine_data():
    return synthetic_ion_machine()


@pytest.fixture(autouse=True)
def registered_machines():
    """Register the synthetic machines in the in-memory registry."""
    machines = [
        register_machine_data(synthetic_ion_machine("protons")),
        register_machine_data(synthetic_ion_machine("carbon")),
        register_machine_data(synthetic_ion_machine("helium", with_bio=False)),
        register_machine_data(synthetic_ion_machine("protons", name="NoLET", with_let=False)),
        register_machine_data(
            {
                "radiation_mode": "photons",
                "name": "Generic",
                "sad": 1000.0,
                "energies": [6.0],
            }
        ),
    ]
    yield machines
    for machine in machines:
        unregister_machine_data(machine.radiation_mode, machine.name)


@pytest.fixture
def water_phantom():
    """10 x 10 x 10 water phantom with 1 mm voxels centered around the origin."""
    return create_ct(cube_hu=np.zeros((10, 10, 10)), resolution={"x": 1.0, "y": 1.0, "z": 1.0})


def _mask(shape=(10, 10, 10), **slices) -> np.ndarray:
    mask = np.zeros(shape, dtype=np.uint8)
    mask[slices.get("z", slice(None)), slices.get("y", slice(None)), slices.get("x", slice(None))] = 1
    return mask


@pytest.fixture
def single_voxel_cst(water_phantom):
    """Body contour with a single target voxel at the center of the phantom."""
    return create_cst(
        [
            {"name": "Body", "voi_type": "EXTERNAL", "mask": _mask()},
            {
                "name": "Target",
                "voi_type": "TARGET",
                "mask": _mask(z=slice(5, 6), y=slice(5, 6), x=slice(5, 6)),
            },
        ],
        ct=water_phantom,
    )


@pytest.fixture
def deep_target_cst(water_phantom):
    """Target spanning four voxels in beam direction (y) behind the center."""
    return create_cst(
        [
            {"name": "Body", "voi_type": "EXTERNAL", "mask": _mask()},
            {
                "name": "Target",
                "voi_type": "TARGET",
                "mask": _mask(z=slice(5, 6), y=slice(5, 9), x=slice(5, 6)),
            },
        ],
        ct=water_phantom,
    )


@pytest.fixture
def box_target_cst(water_phantom):
    """Body contour, an organ at risk and a 3 x 3 x 3 target box."""
    return create_cst(
        [
            {"name": "Body", "voi_type": "EXTERNAL", "mask": _mask()},
            {
                "name": "OAR",
                "voi_type": "OAR",
                "mask": _mask(z=slice(4, 7), y=slice(0, 3), x=slice(4, 7)),
            },
            {
                "name": "Target",
                "voi_type": "TARGET",
                "mask": _mask(z=slice(4, 7), y=slice(4, 7), x=slice(4, 7)),
            },
        ],
        ct=water_phantom,
    )


@pytest.fixture
def proton_pln():
    return IonPlan(
        radiation_mode="protons",
        machine="Generic",
        prop_stf={"gantry_angles": [0.0], "couch_angles": [0.0], "bixel_width": 1.0},
        prop_dose_calc={"engine": "HongPB"},
    )


@pytest.fixture
def carbon_pln():
    return IonPlan(
        radiation_mode="carbon",
        machine="Generic",
        bio_optimization="effect",
        prop_stf={"gantry_angles": [0.0], "couch_angles": [0.0], "bixel_width": 1.0},
        prop_dose_calc={"engine": "HongPB", "calc_let": True},
    )


@pytest.fixture
def photon_pln():
    return PhotonPlan(
        machine="Generic",
        prop_stf={"gantry_angles": [0.0, 90.0], "couch_angles": [0.0, 0.0], "bixel_width": 2.0},
    )


@pytest.fixture
def sample_image():
    image = sitk.GetImageFromArray(np.arange(3 * 5 * 7, dtype=np.float64).reshape((3, 5, 7)))
    image.SetSpacing([1.0, 1.0, 1.0])
    return image


def _without_margin(pln):
    return pln.model_copy(update={"prop_stf": {**pln.prop_stf, "add_margin": False}})


@pytest.fixture
def single_voxel_stf(water_phantom, single_voxel_cst, proton_pln):
    """One proton spot (60 MeV) on the central ray."""
    return generate_stf(water_phantom, single_voxel_cst, _without_margin(proton_pln))


@pytest.fixture
def deep_target_stf(water_phantom, deep_target_cst, proton_pln):
    """Two proton spots (60 and 70 MeV) on the central ray."""
    return generate_stf(water_phantom, deep_target_cst, _without_margin(proton_pln))


@pytest.fixture
def carbon_stf(water_phantom, single_voxel_cst, carbon_pln):
    return generate_stf(water_phantom, single_voxel_cst, _without_margin(carbon_pln))

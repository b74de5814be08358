import pytest
import numpy as np
import SimpleITK as sitk

from pyRadDose import calc_dose_forward, calc_dose_influence
from pyRadDose.core import ConfigurationError, MissingDataError
from pyRadDose.ct import create_ct
from pyRadDose.cst import create_cst
from pyRadDose.dij import Dij
from pyRadDose.dose.engines import ParticleHongPencilBeamEngine
from pyRadDose.plan import IonPlan
from pyRadDose.stf import SteeringInformation, generate_stf


def _voxel(x: int, y: int, z: int) -> int:
    return x + 10 * (y + 10 * z)


CENTER = _voxel(5, 5, 5)


def _pln(radiation_mode="protons", machine="Generic", bio_optimization="none", **prop_dose_calc):
    return IonPlan(
        radiation_mode=radiation_mode,
        machine=machine,
        bio_optimization=bio_optimization,
        prop_stf={
            "gantry_angles": [0.0],
            "couch_angles": [0.0],
            "bixel_width": 1.0,
            "add_margin": False,
        },
        prop_dose_calc={"engine": "HongPB", **prop_dose_calc},
    )


def _column(dij: Dij, quantity: str = "physical_dose", column: int = 0) -> np.ndarray:
    return getattr(dij, quantity)[0].toarray()[:, column]


@pytest.fixture
def proton_dij(water_phantom, single_voxel_cst, single_voxel_stf, proton_pln):
    return calc_dose_influence(water_phantom, single_voxel_cst, single_voxel_stf, proton_pln)


def test_single_spot_influence(proton_dij):
    assert isinstance(proton_dij, Dij)
    assert proton_dij.physical_dose[0].shape == (1000, 1)
    assert proton_dij.physical_dose[0].dtype == np.float32
    assert proton_dij.quantities == ["physical_dose"]
    assert proton_dij.bio_optimization == "none"
    assert proton_dij.let_dose is None
    assert proton_dij.alpha_dose is None

    dose = _column(proton_dij)
    assert np.all(dose >= 0)
    assert dose[CENTER] > 0


def test_single_spot_lateral_profile(proton_dij):
    dose = _column(proton_dij)

    # central axis above off-axis at the same depth
    assert dose[CENTER] > dose[_voxel(6, 5, 5)] > dose[_voxel(7, 5, 5)]
    assert dose[_voxel(4, 5, 5)] == pytest.approx(dose[_voxel(6, 5, 5)], rel=1e-5)
    assert dose[_voxel(5, 5, 4)] == pytest.approx(dose[_voxel(5, 5, 6)], rel=1e-5)


def test_single_spot_depth_profile(proton_dij):
    dose = _column(proton_dij)

    # behind the Bragg peak of the 60 MeV kernel only the tail remains
    assert dose[_voxel(5, 9, 5)] < 0.1 * dose[CENTER]
    assert dose[_voxel(5, 0, 5)] < dose[CENTER]


def test_dosimetric_lateral_cutoff(water_phantom, single_voxel_cst, single_voxel_stf):
    full = calc_dose_influence(
        water_phantom, single_voxel_cst, single_voxel_stf, _pln(dosimetric_lateral_cutoff=1.0)
    )
    assert full.physical_dose[0].nnz == 1000

    default = calc_dose_influence(water_phantom, single_voxel_cst, single_voxel_stf, _pln())
    assert default.physical_dose[0].nnz == 1000

    narrow = calc_dose_influence(
        water_phantom, single_voxel_cst, single_voxel_stf, _pln(dosimetric_lateral_cutoff=0.5)
    )
    assert 0 < narrow.physical_dose[0].nnz < 1000
    assert _column(narrow)[CENTER] > 0


@pytest.mark.parametrize("cutoff", [0.0, -0.5, 1.5])
def test_invalid_dosimetric_lateral_cutoff(
    cutoff, water_phantom, single_voxel_cst, single_voxel_stf
):
    with pytest.raises(ConfigurationError):
        calc_dose_influence(
            water_phantom,
            single_voxel_cst,
            single_voxel_stf,
            _pln(dosimetric_lateral_cutoff=cutoff),
        )


def test_invalid_cut_off_method(water_phantom, single_voxel_cst, single_voxel_stf):
    with pytest.raises(ConfigurationError, match="cut-off method"):
        calc_dose_influence(
            water_phantom, single_voxel_cst, single_voxel_stf, _pln(cut_off_method="gaussian")
        )


def test_relative_cut_off_method(water_phantom, single_voxel_cst, single_voxel_stf):
    dij = calc_dose_influence(
        water_phantom, single_voxel_cst, single_voxel_stf, _pln(cut_off_method="relative")
    )
    assert _column(dij)[CENTER] > 0


def test_deep_target_two_energies(water_phantom, deep_target_cst, deep_target_stf, proton_pln):
    dij = calc_dose_influence(water_phantom, deep_target_cst, deep_target_stf, proton_pln)

    assert dij.physical_dose[0].shape == (1000, 2)
    assert dij.beam_num.tolist() == [0, 0]
    assert dij.ray_num.tolist() == [0, 0]
    assert dij.bixel_num.tolist() == [0, 1]

    low, high = _column(dij, column=0), _column(dij, column=1)
    # the higher energy reaches deeper
    assert high[_voxel(5, 8, 5)] > low[_voxel(5, 8, 5)]
    assert low[CENTER] > high[CENTER]


def test_forward_matches_weighted_influence(
    water_phantom, single_voxel_cst, single_voxel_stf, proton_pln
):
    influence = calc_dose_influence(water_phantom, single_voxel_cst, single_voxel_stf, proton_pln)
    forward = calc_dose_forward(
        water_phantom, single_voxel_cst, single_voxel_stf, proton_pln, weights=np.array([2.0])
    )

    assert forward.physical_dose[0].shape == (1000, 1)
    assert forward.beam_num.tolist() == [-1]
    assert np.allclose(_column(forward), 2.0 * _column(influence), rtol=1e-5)


def test_forward_sums_bixels(water_phantom, deep_target_cst, deep_target_stf, proton_pln):
    weights = np.array([0.5, 1.5])
    influence = calc_dose_influence(water_phantom, deep_target_cst, deep_target_stf, proton_pln)
    forward = calc_dose_forward(
        water_phantom, deep_target_cst, deep_target_stf, proton_pln, weights=weights
    )

    expected = influence.physical_dose[0] @ weights
    assert np.allclose(_column(forward), expected, rtol=1e-5)
    result = forward.compute_result_dose_grid(np.array([1.0]))
    assert result["physical_dose"].GetSize() == (10, 10, 10)


def test_influence_is_deterministic(
    water_phantom, deep_target_cst, deep_target_stf, proton_pln
):
    first = calc_dose_influence(water_phantom, deep_target_cst, deep_target_stf, proton_pln)
    second = calc_dose_influence(water_phantom, deep_target_cst, deep_target_stf, proton_pln)

    a, b = first.physical_dose[0], second.physical_dose[0]
    assert np.array_equal(a.data, b.data)
    assert np.array_equal(a.indices, b.indices)
    assert np.array_equal(a.indptr, b.indptr)


def test_container_size_does_not_change_result(
    water_phantom, deep_target_cst, deep_target_stf
):
    per_column = calc_dose_influence(
        water_phantom, deep_target_cst, deep_target_stf, _pln(num_of_bixels_container=1)
    )
    chunked = calc_dose_influence(
        water_phantom, deep_target_cst, deep_target_stf, _pln(num_of_bixels_container=100)
    )

    a, b = per_column.physical_dose[0], chunked.physical_dose[0]
    assert np.array_equal(a.data, b.data)
    assert np.array_equal(a.indices, b.indices)
    assert np.array_equal(a.indptr, b.indptr)


def test_invalid_container_size(water_phantom, single_voxel_cst, single_voxel_stf):
    with pytest.raises(ConfigurationError):
        calc_dose_influence(
            water_phantom, single_voxel_cst, single_voxel_stf, _pln(num_of_bixels_container=0)
        )


def test_missing_ssd_is_traced(water_phantom, single_voxel_cst, single_voxel_stf, proton_pln):
    reference = calc_dose_influence(water_phantom, single_voxel_cst, single_voxel_stf, proton_pln)

    single_voxel_stf.beams[0].rays[0].ssd = None
    engine = ParticleHongPencilBeamEngine(proton_pln)
    with pytest.warns(UserWarning, match="first voxel"):
        dij = engine.calc_dose_influence(water_phantom, single_voxel_cst, single_voxel_stf)

    assert any("first voxel" in w for w in dij.warnings)
    assert np.allclose(_column(dij), _column(reference), rtol=1e-5)


def test_keep_rad_depth_cubes(water_phantom, single_voxel_cst, single_voxel_stf):
    dij = calc_dose_influence(
        water_phantom, single_voxel_cst, single_voxel_stf, _pln(keep_rad_depth_cubes=True)
    )

    assert len(dij.rad_depth_cubes) == 1
    cube = dij.rad_depth_cubes[0]
    assert isinstance(cube, sitk.Image)
    assert cube.GetSize() == (10, 10, 10)

    # depth grows along the beam direction (y)
    depths = sitk.GetArrayFromImage(cube)[5, :, 5]
    assert np.all(np.diff(depths) > 0)


def test_rad_depth_cubes_dropped_by_default(proton_dij):
    assert proton_dij.rad_depth_cubes is None


def test_given_density_cube(single_voxel_stf):
    ct = create_ct(
        cube_hu=np.zeros((10, 10, 10)),
        cube=np.ones((10, 10, 10)),
        resolution={"x": 1.0, "y": 1.0, "z": 1.0},
    )
    cst = create_cst(
        [
            {"name": "Body", "voi_type": "EXTERNAL", "mask": np.ones((10, 10, 10), dtype=bool)},
            {"name": "Target", "voi_type": "TARGET", "indices": np.array([CENTER])},
        ],
        ct=ct,
    )

    given = calc_dose_influence(ct, cst, single_voxel_stf, _pln(use_given_eq_density_cube=True))
    converted = calc_dose_influence(ct, cst, single_voxel_stf, _pln())

    assert np.allclose(_column(given), _column(converted), rtol=1e-5)


def test_given_density_cube_missing(water_phantom, single_voxel_cst, single_voxel_stf):
    with pytest.warns(UserWarning, match="no ct.cube exists"):
        dij = calc_dose_influence(
            water_phantom,
            single_voxel_cst,
            single_voxel_stf,
            _pln(use_given_eq_density_cube=True),
        )
    assert any("ct.cube" in w for w in dij.warnings)


@pytest.fixture
def carbon_dij(water_phantom, single_voxel_cst, carbon_stf, carbon_pln):
    return calc_dose_influence(water_phantom, single_voxel_cst, carbon_stf, carbon_pln)


def test_carbon_quantities(carbon_dij):
    assert carbon_dij.bio_optimization == "effect"
    assert carbon_dij.quantities == ["physical_dose", "let_dose", "alpha_dose", "sqrt_beta_dose"]

    physical = _column(carbon_dij)
    for quantity in ("let_dose", "alpha_dose", "sqrt_beta_dose"):
        assert np.array_equal(_column(carbon_dij, quantity) > 0, physical > 0)


def test_carbon_bio_kernels(carbon_dij):
    physical = _column(carbon_dij)
    hit = physical > 0

    # tissue class 0: beta = 1.2 * beta_x
    sqrt_beta = _column(carbon_dij, "sqrt_beta_dose")
    assert np.allclose(sqrt_beta, physical * np.sqrt(0.06), rtol=1e-5)

    ratio = _column(carbon_dij, "alpha_dose")[hit] / physical[hit]
    assert np.all(ratio >= 0.1 - 1e-6)
    assert np.all(ratio <= 0.3)


def test_carbon_let(carbon_dij):
    physical = _column(carbon_dij)
    let = _column(carbon_dij, "let_dose")
    # the tabulated LET is at least 1 keV/um
    assert np.all(let[physical > 0] >= physical[physical > 0] * (1 - 1e-5))


def test_carbon_tissue_by_priority(water_phantom, carbon_stf, carbon_pln):
    cst = create_cst(
        [
            {"name": "Body", "voi_type": "EXTERNAL", "mask": np.ones((10, 10, 10), dtype=bool)},
            {
                "name": "Target",
                "voi_type": "TARGET",
                "indices": np.array([CENTER]),
                "alpha_x": 0.3,
                "beta_x": 0.03,
            },
        ],
        ct=water_phantom,
    )
    dij = calc_dose_influence(water_phantom, cst, carbon_stf, carbon_pln)

    physical = _column(dij)
    sqrt_beta = _column(dij, "sqrt_beta_dose")
    assert sqrt_beta[CENTER] / physical[CENTER] == pytest.approx(np.sqrt(0.036), rel=1e-5)
    neighbour = _voxel(6, 5, 5)
    assert sqrt_beta[neighbour] / physical[neighbour] == pytest.approx(np.sqrt(0.06), rel=1e-5)


def test_carbon_unknown_tissue(water_phantom, carbon_stf, carbon_pln):
    cst = create_cst(
        [
            {"name": "Body", "voi_type": "EXTERNAL", "mask": np.ones((10, 10, 10), dtype=bool)},
            {
                "name": "Target",
                "voi_type": "TARGET",
                "indices": np.array([CENTER]),
                "alpha_x": 0.2,
            },
        ],
        ct=water_phantom,
    )
    with pytest.raises(MissingDataError, match="alpha_x = 0.2"):
        calc_dose_influence(water_phantom, cst, carbon_stf, carbon_pln)


def test_carbon_bio_without_optimization(water_phantom, single_voxel_cst, carbon_stf):
    dij = calc_dose_influence(
        water_phantom,
        single_voxel_cst,
        carbon_stf,
        _pln("carbon", calc_bio_dose=True),
    )
    assert dij.bio_optimization == "effect"
    assert dij.alpha_dose is not None
    assert dij.let_dose is None


def test_proton_bio_not_supported(water_phantom, single_voxel_cst, single_voxel_stf):
    with pytest.warns(UserWarning, match="not supported for protons"):
        dij = calc_dose_influence(
            water_phantom,
            single_voxel_cst,
            single_voxel_stf,
            _pln(bio_optimization="effect"),
        )

    assert dij.bio_optimization == "none"
    assert dij.alpha_dose is None
    assert dij.sqrt_beta_dose is None


def test_helium_without_bio_kernels(water_phantom, single_voxel_cst):
    pln = _pln("helium", bio_optimization="effect")
    stf = generate_stf(water_phantom, single_voxel_cst, pln)

    with pytest.warns(UserWarning, match="Biological kernels not available"):
        dij = calc_dose_influence(water_phantom, single_voxel_cst, stf, pln)

    assert dij.bio_optimization == "none"
    assert dij.alpha_dose is None
    assert dij.physical_dose[0].nnz > 0


def test_let_without_let_kernels(water_phantom, single_voxel_cst):
    pln = _pln(machine="NoLET", calc_let=True)
    stf = generate_stf(water_phantom, single_voxel_cst, pln)

    with pytest.warns(UserWarning, match="No LET data found"):
        dij = calc_dose_influence(water_phantom, single_voxel_cst, stf, pln)

    assert dij.let_dose is None
    assert "No LET data found in machine data. LET calculation will be skipped." in dij.warnings


def test_proton_let(water_phantom, single_voxel_cst, single_voxel_stf):
    dij = calc_dose_influence(
        water_phantom, single_voxel_cst, single_voxel_stf, _pln(calc_let=True)
    )
    assert dij.quantities == ["physical_dose", "let_dose"]
    assert dij.let_dose[0].shape == (1000, 1)


def test_air_offset_correction(water_phantom, single_voxel_cst, single_voxel_stf):
    corrected = calc_dose_influence(water_phantom, single_voxel_cst, single_voxel_stf, _pln())
    uncorrected = calc_dose_influence(
        water_phantom,
        single_voxel_cst,
        single_voxel_stf,
        _pln(air_offset_correction=False),
    )

    assert not np.allclose(_column(corrected), _column(uncorrected))


def test_beam_without_rays(water_phantom, single_voxel_cst, single_voxel_stf, proton_pln):
    reference = calc_dose_influence(water_phantom, single_voxel_cst, single_voxel_stf, proton_pln)

    beam = single_voxel_stf.beams[0]
    stf = SteeringInformation(
        beams=[beam, beam.model_copy(update={"rays": [], "gantry_angle": 90.0})]
    )
    dij = calc_dose_influence(water_phantom, single_voxel_cst, stf, proton_pln)

    assert dij.num_of_beams == 2
    assert dij.physical_dose[0].shape == (1000, 1)
    assert dij.beam_num.tolist() == [0]
    assert np.array_equal(_column(dij), _column(reference))

    forward = calc_dose_forward(water_phantom, single_voxel_cst, stf, proton_pln)
    assert np.allclose(_column(forward), _column(reference), rtol=1e-5)


def test_column_matches_dose_kernel(water_phantom, single_voxel_cst, single_voxel_stf):
    dij = calc_dose_influence(
        water_phantom,
        single_voxel_cst,
        single_voxel_stf,
        _pln(dosimetric_lateral_cutoff=1.0, air_offset_correction=False, keep_rad_depth_cubes=True),
    )
    column = _column(dij)

    ray = single_voxel_stf.beams[0].rays[0]
    beamlet = ray.beamlets[0]
    machine = ParticleHongPencilBeamEngine.load_machine("protons", "Generic")
    kernel = machine.get_kernel_by_energy(beamlet.energy)

    depths = sitk.GetArrayFromImage(dij.rad_depth_cubes[0]).ravel()
    # central ray along y through the target voxel, 1 mm voxels
    z, _, x = np.indices((10, 10, 10))
    lateral_sq = ((x - 5.0) ** 2 + (z - 5.0) ** 2).ravel()

    # no dose beyond the deepest tabulated depth of the kernel
    kept = depths <= kernel.max_depth
    assert np.all(column[~kept] == 0)

    expected = ParticleHongPencilBeamEngine().dose_kernel(
        depths[kept], lateral_sq[kept], ray.ssd, beamlet.focus_ix, kernel, machine=machine
    )
    assert np.allclose(column[kept], expected, rtol=1e-4, atol=1e-10)
    assert column.sum() == pytest.approx(expected.sum(), rel=1e-4)

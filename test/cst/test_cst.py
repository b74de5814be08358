import pytest
import numpy as np
import SimpleITK as sitk
from pydantic import ValidationError

from pyRadDose.ct import create_ct
from pyRadDose.cst import StructureSet, create_cst, validate_cst, Target, ExternalVOI


def _mask(**slices) -> np.ndarray:
    mask = np.zeros((10, 10, 10), dtype=np.uint8)
    mask[slices.get("z", slice(None)), slices.get("y", slice(None)), slices.get("x", slice(None))] = 1
    return mask


def test_create_cst_from_list(water_phantom):
    cst = create_cst(
        [
            {"name": "Body", "voi_type": "EXTERNAL", "mask": _mask()},
            {"name": "Target", "voi_type": "TARGET", "mask": _mask(z=slice(5, 6))},
        ],
        ct=water_phantom,
    )
    assert isinstance(cst, StructureSet)
    assert isinstance(cst.get_voi("Body"), ExternalVOI)
    assert isinstance(cst.get_voi("Target"), Target)
    assert sorted(cst.voi_types) == ["EXTERNAL", "TARGET"]

    assert validate_cst(cst) is cst
    assert create_cst(cst, ct=water_phantom) is cst


def test_create_cst_from_dict(water_phantom):
    cst = create_cst({"vois": [{"name": "T", "voi_type": "TARGET", "mask": _mask(x=slice(2, 3))}]}, ct=water_phantom)
    assert cst.get_voi("T").num_voxels == 100


def test_create_cst_without_ct():
    with pytest.raises(ValueError):
        create_cst([{"name": "T", "voi_type": "TARGET", "mask": _mask()}])


def test_create_cst_ct_mismatch(box_target_cst):
    other_ct = create_ct(cube_hu=np.zeros((5, 5, 5)))
    with pytest.raises(ValueError):
        create_cst(box_target_cst, ct=other_ct)


def test_cst_duplicate_names(water_phantom):
    with pytest.raises(ValidationError):
        create_cst(
            [
                {"name": "T", "voi_type": "TARGET", "mask": _mask()},
                {"name": "T", "voi_type": "OAR", "mask": _mask()},
            ],
            ct=water_phantom,
        )


def test_cst_get_voi_missing(box_target_cst):
    with pytest.raises(KeyError):
        box_target_cst.get_voi("Brain")


def test_cst_target_voxels(box_target_cst):
    voxels = box_target_cst.target_union_voxels()
    assert voxels.size == 27
    assert np.array_equal(voxels, box_target_cst.get_voi("Target").indices_numpy)

    mask_image = box_target_cst.target_union_mask()
    mask = sitk.GetArrayViewFromImage(mask_image)
    assert mask.sum() == 27
    assert mask[5, 5, 5] == 1


def test_cst_without_target(water_phantom):
    cst = create_cst([{"name": "Body", "voi_type": "EXTERNAL", "mask": _mask()}], ct=water_phantom)
    assert cst.target_union_voxels().size == 0


def test_cst_patient_voxels_external(box_target_cst):
    assert box_target_cst.patient_voxels().size == 1000


def test_cst_patient_voxels_union(water_phantom):
    cst = create_cst(
        [
            {"name": "OAR", "voi_type": "OAR", "mask": _mask(z=slice(0, 1))},
            {"name": "Target", "voi_type": "TARGET", "mask": _mask(z=slice(0, 2))},
        ],
        ct=water_phantom,
    )
    assert cst.patient_voxels().size == 200
    assert sitk.GetArrayViewFromImage(cst.patient_mask()).sum() == 200


def test_cst_target_center_of_mass(box_target_cst, deep_target_cst):
    assert np.allclose(box_target_cst.target_center_of_mass(), [0.0, 0.0, 0.0])
    # y-subscripts 5..8 of a centered 1 mm grid
    assert np.allclose(deep_target_cst.target_center_of_mass(), [0.0, 1.5, 0.0])


def test_cst_apply_overlap_priorities(water_phantom):
    cst = create_cst(
        [
            {"name": "Body", "voi_type": "EXTERNAL", "mask": _mask()},
            {"name": "OAR", "voi_type": "OAR", "mask": _mask(z=slice(4, 7), y=slice(5, 9), x=slice(4, 7))},
            {"name": "Target", "voi_type": "TARGET", "mask": _mask(z=slice(4, 7), y=slice(4, 7), x=slice(4, 7))},
        ],
        ct=water_phantom,
    )

    resolved = cst.apply_overlap_priorities()

    assert resolved.get_voi("Target").num_voxels == 27
    assert resolved.get_voi("OAR").num_voxels == 36 - 18
    # Body loses the voxels of the target and the remaining organ at risk
    assert resolved.get_voi("Body").num_voxels == 1000 - 27 - 18

    # the original structure set is untouched
    assert cst.get_voi("OAR").num_voxels == 36
    assert cst.get_voi("Body").num_voxels == 1000


def test_cst_overlap_equal_priority(water_phantom):
    cst = create_cst(
        [
            {"name": "OAR1", "voi_type": "OAR", "mask": _mask(z=slice(0, 2))},
            {"name": "OAR2", "voi_type": "OAR", "mask": _mask(z=slice(1, 3))},
        ],
        ct=water_phantom,
    )
    resolved = cst.apply_overlap_priorities()
    assert resolved.get_voi("OAR1").num_voxels == 200
    assert resolved.get_voi("OAR2").num_voxels == 200

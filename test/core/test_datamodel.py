import numpy as np
import pytest
from pydantic import Field, ValidationError

from pyRadDose.core import PyRadDoseBaseModel


class SampleModel(PyRadDoseBaseModel):
    test_field: int = Field(default=1, ge=0)
    values: np.ndarray = Field(default_factory=lambda: np.zeros(3))


def test_camel_case_alias():
    model = SampleModel(testField=2)
    assert model.test_field == 2

    dumped = model.model_dump(by_alias=True)
    assert "testField" in dumped


def test_populate_by_name():
    model = SampleModel(test_field=3)
    assert model.test_field == 3


def test_validate_assignment():
    model = SampleModel()
    with pytest.raises(ValidationError):
        model.test_field = -1


def test_equality_with_numpy_fields():
    a = SampleModel(values=np.arange(3.0))
    b = SampleModel(values=np.arange(3.0))
    c = SampleModel(values=np.ones(3))

    assert a == b
    assert a != c
    assert a != "something else"

from typing import Any, Union
from typing_extensions import Self
import numpy as np
from pydantic import (
    Field,
    PrivateAttr,
    model_validator,
)
from numpydantic import NDArray, Shape

from ..core import PyRadDoseBaseModel
from ._beam import Beam


class SteeringInformation(PyRadDoseBaseModel):
    """
    A class representing the Steering Information (stf).

    Holds the beams and an explicit traversal index over all bixels. The
    index enumerates the bixels beam-major, then ray, then bixel within the
    ray. Column ``c`` of a dose influence matrix belongs to the bixel at
    position ``c`` of this enumeration.

    Attributes
    ----------
    beams : list[Beam]
        The beams of the plan.
    warnings : list[str]
        Non-fatal conditions encountered during generation.
    """

    beams: list[Beam]
    warnings: list[str] = Field(default_factory=list)

    _bixel_beam_index_map: np.ndarray = PrivateAttr()
    _bixel_ray_index_per_beam_map: np.ndarray = PrivateAttr()
    _bixel_index_per_beam_map: np.ndarray = PrivateAttr()
    _beam_bixel_offsets: np.ndarray = PrivateAttr()

    @model_validator(mode="before")
    @classmethod
    def validate_model_input(cls, data: Any) -> Any:
        """Allow a plain list of beams as input."""
        if isinstance(data, list):
            return {"beams": data}
        return data

    @model_validator(mode="after")
    def _build_traversal_index(self) -> Self:
        """Compute the bixel traversal index from the beams."""
        bixels_per_beam = np.array(
            [beam.total_number_of_bixels for beam in self.beams], dtype=np.int64
        )
        self._beam_bixel_offsets = np.concatenate(([0], np.cumsum(bixels_per_beam)))[:-1].astype(
            np.int64
        )

        self._bixel_beam_index_map = np.repeat(
            np.arange(len(self.beams), dtype=np.int64), bixels_per_beam
        )

        if self.beams:
            self._bixel_ray_index_per_beam_map = np.concatenate(
                [beam.bixel_ray_map.astype(np.int64) for beam in self.beams]
            )
            self._bixel_index_per_beam_map = np.concatenate(
                [np.arange(n, dtype=np.int64) for n in bixels_per_beam]
            )
        else:
            self._bixel_ray_index_per_beam_map = np.empty(0, dtype=np.int64)
            self._bixel_index_per_beam_map = np.empty(0, dtype=np.int64)

        return self

    @property
    def num_of_beams(self) -> int:
        return len(self.beams)

    @property
    def num_of_rays(self) -> int:
        return sum(beam.num_of_rays for beam in self.beams)

    @property
    def total_number_of_bixels(self) -> int:
        return int(self._bixel_beam_index_map.size)

    @property
    def bixel_beam_index_map(self) -> NDArray[Shape["*"], np.int64]:
        """Mapping of bixels to their respective beam index."""
        return self._bixel_beam_index_map

    @property
    def bixel_ray_index_per_beam_map(self) -> NDArray[Shape["*"], np.int64]:
        """Mapping of bixels to the ray index in the individual beams."""
        return self._bixel_ray_index_per_beam_map

    @property
    def bixel_index_per_beam_map(self) -> NDArray[Shape["*"], np.int64]:
        """Mapping of bixels to their bixel index in the respective beam."""
        return self._bixel_index_per_beam_map

    @property
    def beam_bixel_offsets(self) -> NDArray[Shape["*"], np.int64]:
        """Global column of the first bixel of each beam."""
        return self._beam_bixel_offsets

    def column_index(self, beam_ix: int, bixel_ix: int) -> int:
        """Global column of the ``bixel_ix``-th bixel of beam ``beam_ix``."""
        return int(self._beam_bixel_offsets[beam_ix] + bixel_ix)


def create_stf(
    stf: Union[dict[str, Any], SteeringInformation, list, None] = None, **kwargs
) -> SteeringInformation:
    """
    Create a Steering Information object.

    Parameters
    ----------
    stf : Union[dict[str, Any], list, None]
        dictionary (or list of beams) containing the data to create the stf object.
    **kwargs
        Arbitrary keyword arguments.

    Returns
    -------
    SteeringInformation
        A SteeringInformation class object.
    """
    if stf:
        if isinstance(stf, SteeringInformation):
            return stf
        return SteeringInformation.model_validate(stf)

    return SteeringInformation(**kwargs)


def validate_stf(
    stf: Union[dict[str, Any], SteeringInformation, list, None] = None, **kwargs
) -> SteeringInformation:
    """
    Validate a Steering Information object.

    Synonym to create_stf but should be used in validation context.
    """
    return create_stf(stf, **kwargs)

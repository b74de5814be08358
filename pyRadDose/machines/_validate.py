from typing import Any, Union

from ..core import ConfigurationError
from ._base import Machine
from ._factory import get_machine


def validate_machine(data: Union[dict[str, Any], Machine, None] = None, **kwargs: Any) -> Machine:
    """
    Create and validate a ``Machine`` instance.

    The model class is resolved from the radiation mode.

    Parameters
    ----------
    data
        A pre-existing ``Machine`` instance or a dictionary payload.
    **kwargs
        Keyword arguments used when no dictionary is provided.
    """

    if isinstance(data, Machine):
        return data

    if data is None:
        data = kwargs
    if not isinstance(data, dict):
        raise ValueError("Dictionary Structure of provided machine not valid!")

    radiation_mode = data.get("radiation_mode") or data.get("radiationMode") or ""

    machine_cls = get_machine(radiation_mode)
    if machine_cls is None:
        raise ConfigurationError(
            f"Could not resolve machine class for radiation_mode='{radiation_mode}'."
        )

    return machine_cls.model_validate(data)

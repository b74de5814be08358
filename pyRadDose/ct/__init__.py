from ._ct import CT, create_ct, validate_ct
from ._hlut import default_hlut

__all__ = ["CT", "create_ct", "validate_ct", "default_hlut"]

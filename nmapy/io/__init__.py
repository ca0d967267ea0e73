"""I/O utilities for nmapy analyses."""

from nmapy.io.readers import (
    read_csv,
    read_json,
    contrasts_from_records,
    contrasts_from_dataframe,
    arms_from_records,
)
from nmapy.io.schema import FieldSpec, validate_input, generate_template

__all__ = [
    "read_csv",
    "read_json",
    "contrasts_from_records",
    "contrasts_from_dataframe",
    "arms_from_records",
    "FieldSpec",
    "validate_input",
    "generate_template",
]

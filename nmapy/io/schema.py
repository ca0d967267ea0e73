"""
Schema validation for nmapy.

This module provides field specifications for contrast and arm records
and validation of raw input before it is turned into Contrast objects.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple, Union
import json
import math


@dataclass
class FieldSpec:
    """Specification for a data field."""

    name: str
    dtype: str  # 'float', 'int', 'str', 'bool'
    required: bool = True
    default: Any = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    exclusive_min: bool = False
    allowed_values: Optional[List[Any]] = None
    description: str = ""

    def validate(self, value: Any) -> Tuple[bool, str]:
        """
        Validate a value against this field spec.

        Args:
            value: Value to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None or (isinstance(value, float) and math.isnan(value)):
            if self.required:
                return False, f"{self.name} is required"
            return True, ""

        dtype_map = {
            'float': (int, float),
            'int': int,
            'str': str,
            'bool': bool,
        }

        expected_types = dtype_map.get(self.dtype)
        if expected_types and (
            not isinstance(value, expected_types)
            or (self.dtype in ('float', 'int') and isinstance(value, bool))
        ):
            return False, f"{self.name} must be {self.dtype}, got {type(value).__name__}"

        if self.dtype == 'str' and value.strip() == "":
            return False, f"{self.name} must not be empty"
        if self.dtype == 'float' and not math.isfinite(value):
            return False, f"{self.name} must be finite"

        if self.min_value is not None:
            if self.exclusive_min and value <= self.min_value:
                return False, f"{self.name} must be > {self.min_value}"
            if value < self.min_value:
                return False, f"{self.name} must be >= {self.min_value}"
        if self.max_value is not None and value > self.max_value:
            return False, f"{self.name} must be <= {self.max_value}"

        if self.allowed_values is not None and value not in self.allowed_values:
            return False, f"{self.name} must be one of {self.allowed_values}"

        return True, ""


CONTRAST_FIELDS: List[FieldSpec] = [
    FieldSpec("study_id", "str", required=True, description="Study identifier"),
    FieldSpec("treatment_a", "str", required=True, description="Comparator arm"),
    FieldSpec("treatment_b", "str", required=True, description="Active arm"),
    FieldSpec("effect_size", "float", required=True,
              description="Effect of treatment_b vs treatment_a (log scale for ratios)"),
    FieldSpec("variance", "float", required=False, min_value=0, exclusive_min=True,
              description="Sampling variance"),
    FieldSpec("se", "float", required=False, min_value=0, exclusive_min=True,
              description="Standard error"),
    FieldSpec("ci_lower", "float", required=False, description="Lower confidence bound"),
    FieldSpec("ci_upper", "float", required=False, description="Upper confidence bound"),
    FieldSpec("ci_level", "float", required=False, default=0.95,
              min_value=0.5, max_value=0.999, description="Confidence level"),
    FieldSpec("baseline_variance", "float", required=False, min_value=0,
              description="Variance of the shared baseline arm (multi-arm studies)"),
]

ARM_FIELDS: List[FieldSpec] = [
    FieldSpec("study_id", "str", required=True, description="Study identifier"),
    FieldSpec("treatment", "str", required=True, description="Treatment of the arm"),
    FieldSpec("n", "int", required=True, min_value=1, description="Arm size"),
    FieldSpec("events", "int", required=False, min_value=0, description="Event count"),
    FieldSpec("mean", "float", required=False, description="Mean response"),
    FieldSpec("sd", "float", required=False, min_value=0, exclusive_min=True,
              description="Standard deviation"),
]

SCHEMAS: Dict[str, List[FieldSpec]] = {
    "contrast": CONTRAST_FIELDS,
    "arm": ARM_FIELDS,
}


def validate_contrast_record(data: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """
    Validate one contrast record.

    Args:
        data: Dictionary with contrast data

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = _check_fields(data, CONTRAST_FIELDS)

    has_ci = data.get("ci_lower") is not None and data.get("ci_upper") is not None
    if data.get("variance") is None and data.get("se") is None and not has_ci:
        errors.append("One of 'variance', 'se' or both 'ci_lower' and 'ci_upper' must be provided")
    if has_ci and _is_number(data["ci_lower"]) and _is_number(data["ci_upper"]):
        if data["ci_lower"] >= data["ci_upper"]:
            errors.append("ci_lower must be < ci_upper")

    if data.get("treatment_a") is not None and data.get("treatment_a") == data.get("treatment_b"):
        errors.append("treatment_a and treatment_b must differ")

    return len(errors) == 0, errors


def validate_arm_record(data: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """
    Validate one arm record.

    Args:
        data: Dictionary with arm data

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = _check_fields(data, ARM_FIELDS)

    binary = data.get("events") is not None
    continuous = data.get("mean") is not None and data.get("sd") is not None
    if not binary and not continuous:
        errors.append("Either 'events' or both 'mean' and 'sd' must be provided")
    if binary and _is_number(data.get("n")) and _is_number(data["events"]):
        if data["events"] > data["n"]:
            errors.append("events must be <= n")

    return len(errors) == 0, errors


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_fields(data: Dict[str, Any], specs: List[FieldSpec]) -> List[str]:
    errors = []
    for field_spec in specs:
        is_valid, error = field_spec.validate(data.get(field_spec.name))
        if not is_valid:
            errors.append(error)
    return errors


def validate_input(
    data: Union[Dict, List[Dict]],
    schema_type: str = "contrast"
) -> Tuple[bool, List[str]]:
    """
    Convenience function to validate input data.

    Args:
        data: Data to validate (single dict or list of dicts)
        schema_type: Type of schema ('contrast' or 'arm')

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    validators = {
        "contrast": validate_contrast_record,
        "arm": validate_arm_record,
    }
    if schema_type not in validators:
        return False, [f"Unknown schema type: {schema_type}"]
    validate = validators[schema_type]

    if isinstance(data, list):
        all_errors = []
        for i, item in enumerate(data):
            _, errors = validate(item)
            if errors:
                all_errors.extend([f"Item {i}: {e}" for e in errors])
        return len(all_errors) == 0, all_errors

    return validate(data)


def generate_template(schema_type: str = "contrast", format: str = "dict") -> Any:
    """
    Generate a template for data entry.

    Args:
        schema_type: Type of schema ('contrast' or 'arm')
        format: Output format ('dict', 'json', 'csv_header')

    Returns:
        Template in requested format
    """
    if schema_type not in SCHEMAS:
        raise ValueError(f"Unknown schema type: {schema_type}")
    fields = SCHEMAS[schema_type]

    if format == "dict":
        return {
            f.name: f.default if f.default is not None else f"<{f.dtype}>"
            for f in fields
        }

    elif format == "json":
        template = {f.name: f.default for f in fields}
        return json.dumps(template, indent=2)

    elif format == "csv_header":
        return ",".join(f.name for f in fields)

    else:
        raise ValueError(f"Unknown format: {format}")

"""
Data readers for nmapy.

This module provides functions for reading contrast and arm-level data
from records, pandas DataFrames, CSV and JSON files and converting them
to nmapy objects.
"""

from __future__ import annotations
from typing import Optional, Dict, Any, List, Union, Iterable
import json
import csv
from pathlib import Path
import math

from nmapy.alignment.effect_measures import ArmData, EffectMeasure, arms_to_contrasts
from nmapy.core.contrast import Contrast
from nmapy.core.exceptions import ValidationError
from nmapy.utils import se_from_ci

# Column names accepted for each contrast field
DEFAULT_COLUMNS = {
    "study_id": "study_id",
    "treatment_a": "treatment_a",
    "treatment_b": "treatment_b",
    "effect_size": "effect_size",
    "variance": "variance",
    "se": "se",
    "ci_lower": "ci_lower",
    "ci_upper": "ci_upper",
    "baseline_variance": "baseline_variance",
}


def _value(row: Dict[str, Any], col: Optional[str]) -> Any:
    """Cell value, with blanks and NaN read as missing."""
    if col is None or col not in row:
        return None
    val = row[col]
    if val is None:
        return None
    if isinstance(val, str):
        val = val.strip()
        return val if val != "" else None
    if isinstance(val, float) and math.isnan(val):
        return None
    return val


def _number(row: Dict[str, Any], col: Optional[str], ident: str) -> Optional[float]:
    val = _value(row, col)
    if val is None:
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        raise ValidationError(f"Row {ident}: {col} is not a number: {val!r}", [ident]) from None


def contrast_from_record(
    row: Dict[str, Any],
    columns: Optional[Dict[str, str]] = None,
    ci_level: float = 0.95,
    log_ci: bool = False,
    index: int = 0
) -> Contrast:
    """
    Build one Contrast from a record.

    The variance is taken from the variance column, else the squared
    standard error, else derived from the confidence interval.

    Args:
        row: Mapping of column name to value
        columns: Overrides for DEFAULT_COLUMNS
        ci_level: Confidence level of CI columns
        log_ci: CI bounds are on the ratio scale and are logged
        index: Row position, used in error messages

    Returns:
        Contrast
    """
    cols = dict(DEFAULT_COLUMNS)
    if columns:
        cols.update(columns)

    study_id = _value(row, cols["study_id"])
    ident = str(study_id) if study_id is not None else f"#{index + 1}"

    variance = _number(row, cols["variance"], ident)
    if variance is None:
        se = _number(row, cols["se"], ident)
        if se is not None:
            variance = se ** 2
    if variance is None:
        lo = _number(row, cols["ci_lower"], ident)
        hi = _number(row, cols["ci_upper"], ident)
        if lo is not None and hi is not None:
            try:
                variance = se_from_ci(lo, hi, ci_level, log_scale=log_ci) ** 2
            except ValueError as e:
                raise ValidationError(f"Row {ident}: {e}", [ident]) from None

    return Contrast(
        study_id=study_id,
        treatment_a=_value(row, cols["treatment_a"]),
        treatment_b=_value(row, cols["treatment_b"]),
        effect_size=_number(row, cols["effect_size"], ident),
        variance=variance,
        baseline_variance=_number(row, cols["baseline_variance"], ident),
    )


def contrasts_from_records(
    records: Iterable[Dict[str, Any]],
    columns: Optional[Dict[str, str]] = None,
    ci_level: float = 0.95,
    log_ci: bool = False
) -> List[Contrast]:
    """
    Convert a sequence of records to contrasts.

    Args:
        records: Iterable of dictionaries, one per contrast
        columns: Overrides for DEFAULT_COLUMNS
        ci_level: Confidence level of CI columns
        log_ci: CI bounds are on the ratio scale and are logged

    Returns:
        List of Contrast objects
    """
    return [
        contrast_from_record(row, columns, ci_level, log_ci, index=i)
        for i, row in enumerate(records)
    ]


def contrasts_from_dataframe(
    df,
    columns: Optional[Dict[str, str]] = None,
    ci_level: float = 0.95,
    log_ci: bool = False
) -> List[Contrast]:
    """
    Convert pandas DataFrame to list of Contrast objects.

    Args:
        df: pandas DataFrame with one row per contrast
        columns: Overrides for DEFAULT_COLUMNS
        ci_level: Confidence level of CI columns
        log_ci: CI bounds are on the ratio scale and are logged

    Returns:
        List of Contrast objects
    """
    import pandas as pd

    records = df.astype(object).where(pd.notna(df), None).to_dict(orient="records")
    return contrasts_from_records(records, columns, ci_level, log_ci)


def read_csv(
    filepath: Union[str, Path],
    columns: Optional[Dict[str, str]] = None,
    ci_level: float = 0.95,
    log_ci: bool = False,
    delimiter: str = ","
) -> List[Contrast]:
    """
    Read contrast data from CSV file.

    Args:
        filepath: Path to CSV file
        columns: Overrides for DEFAULT_COLUMNS
        ci_level: Confidence level of CI columns
        log_ci: CI bounds are on the ratio scale and are logged
        delimiter: CSV delimiter

    Returns:
        List of Contrast objects
    """
    filepath = Path(filepath)

    with open(filepath, 'r', encoding='utf-8', newline='') as f:
        reader = csv.DictReader(f, delimiter=delimiter)
        return contrasts_from_records(reader, columns, ci_level, log_ci)


def read_json(
    filepath: Union[str, Path],
    ci_level: float = 0.95,
    log_ci: bool = False
) -> List[Contrast]:
    """
    Read contrast data from JSON file.

    Expected format:
    {
        "contrasts": [
            {
                "study_id": "S1",
                "treatment_a": "A",
                "treatment_b": "B",
                "effect_size": 0.5,
                "variance": 0.04
            },
            ...
        ]
    }

    A bare list of contrast objects is also accepted.

    Args:
        filepath: Path to JSON file
        ci_level: Confidence level of CI fields
        log_ci: CI bounds are on the ratio scale and are logged

    Returns:
        List of Contrast objects
    """
    filepath = Path(filepath)

    with open(filepath, 'r', encoding='utf-8') as f:
        data = json.load(f)

    records = data.get("contrasts", []) if isinstance(data, dict) else data
    return contrasts_from_records(records, ci_level=ci_level, log_ci=log_ci)


def arms_from_records(
    records: Iterable[Dict[str, Any]],
    measure: Optional[Union[str, EffectMeasure]] = None
) -> Union[List[ArmData], List[Contrast]]:
    """
    Read arm-level rows.

    Expected columns: study_id, treatment, n and either events or
    mean and sd. The first arm listed for a study is its baseline.

    Args:
        records: Iterable of dictionaries, one per arm
        measure: If given, convert the arms to contrasts with this measure

    Returns:
        List of ArmData, or List of Contrast when ``measure`` is given
    """
    arms = []
    for i, row in enumerate(records):
        study_id = _value(row, "study_id")
        ident = str(study_id) if study_id is not None else f"#{i + 1}"
        n = _number(row, "n", ident)
        events = _number(row, "events", ident)
        if n is None:
            raise ValidationError(f"Row {ident}: n is required", [ident])
        arms.append(ArmData(
            study_id=study_id,
            treatment=_value(row, "treatment"),
            n=int(n),
            events=int(events) if events is not None else None,
            mean=_number(row, "mean", ident),
            sd=_number(row, "sd", ident),
        ))

    if measure is not None:
        return arms_to_contrasts(arms, measure)
    return arms

"""Unit tests for data readers and schema validation."""

import json

import pytest
import numpy as np
import pandas as pd

from nmapy.core.exceptions import ValidationError
from nmapy.io.readers import (
    arms_from_records,
    contrast_from_record,
    contrasts_from_dataframe,
    read_csv,
    read_json,
)
from nmapy.io.schema import generate_template, validate_input

Z95 = 1.959963984540054


class TestRecords:
    """Tests for building contrasts from records."""

    def test_variance_column(self):
        """Test the variance column is used directly."""
        c = contrast_from_record({"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
                                  "effect_size": 0.5, "variance": 0.04})
        assert c.variance == 0.04

    def test_se_column(self):
        """Test the standard error is squared."""
        c = contrast_from_record({"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
                                  "effect_size": 0.5, "se": 0.2})
        assert c.variance == pytest.approx(0.04)

    def test_ci_columns(self):
        """Test the variance is derived from a confidence interval."""
        c = contrast_from_record({"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
                                  "effect_size": 0.5, "ci_lower": 0.1, "ci_upper": 0.9})
        assert c.se == pytest.approx(0.8 / (2 * Z95))

    def test_log_ci(self):
        """Test ratio-scale intervals are logged."""
        c = contrast_from_record(
            {"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
             "effect_size": 0.0, "ci_lower": 0.5, "ci_upper": 2.0},
            log_ci=True,
        )
        assert c.se == pytest.approx(np.log(4.0) / (2 * Z95))

    def test_custom_columns(self):
        """Test column names can be remapped."""
        c = contrast_from_record(
            {"trial": "T1", "ctl": "A", "trt": "B", "logOR": 0.3, "v": 0.1},
            columns={"study_id": "trial", "treatment_a": "ctl", "treatment_b": "trt",
                     "effect_size": "logOR", "variance": "v"},
        )
        assert c.study_id == "T1"
        assert c.effect_size == 0.3

    def test_non_numeric(self):
        """Test a non-numeric value is reported with its row."""
        with pytest.raises(ValidationError) as exc_info:
            contrast_from_record({"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
                                  "effect_size": "large", "variance": 0.04})
        assert "S1" in str(exc_info.value)

    def test_missing_variance(self):
        """Test a record without any precision information is rejected."""
        with pytest.raises(ValidationError):
            contrast_from_record({"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
                                  "effect_size": 0.5})


class TestFiles:
    """Tests for CSV, JSON and DataFrame input."""

    def test_read_csv(self, tmp_path):
        """Test CSV rows with mixed precision columns."""
        path = tmp_path / "contrasts.csv"
        path.write_text(
            "study_id,treatment_a,treatment_b,effect_size,variance,se,ci_lower,ci_upper\n"
            "S1,A,B,0.5,0.04,,,\n"
            "S2,B,C,0.3,,0.2,,\n"
            "S3,A,C,0.8,,,0.4,1.2\n"
        )
        contrasts = read_csv(path)
        assert [c.study_id for c in contrasts] == ["S1", "S2", "S3"]
        assert contrasts[0].variance == 0.04
        assert contrasts[1].variance == pytest.approx(0.04)
        assert contrasts[2].se == pytest.approx(0.8 / (2 * Z95))

    def test_read_csv_delimiter(self, tmp_path):
        """Test a semicolon-separated file."""
        path = tmp_path / "contrasts.csv"
        path.write_text("study_id;treatment_a;treatment_b;effect_size;variance\nS1;A;B;0.5;0.04\n")
        (c,) = read_csv(path, delimiter=";")
        assert c.effect_size == 0.5

    def test_read_json(self, tmp_path, triangle):
        """Test both the wrapped and bare JSON layouts."""
        records = [c.to_dict() for c in triangle]
        wrapped = tmp_path / "wrapped.json"
        wrapped.write_text(json.dumps({"contrasts": records}))
        bare = tmp_path / "bare.json"
        bare.write_text(json.dumps(records))
        assert read_json(wrapped) == triangle
        assert read_json(bare) == triangle

    def test_dataframe_with_missing_values(self):
        """Test NaN cells are read as missing."""
        df = pd.DataFrame({
            "study_id": ["S1", "S2"],
            "treatment_a": ["A", "A"],
            "treatment_b": ["B", "C"],
            "effect_size": [0.5, 0.8],
            "variance": [0.04, np.nan],
            "se": [np.nan, 0.3],
        })
        contrasts = contrasts_from_dataframe(df)
        assert contrasts[0].variance == 0.04
        assert contrasts[1].variance == pytest.approx(0.09)

    def test_arm_records(self):
        """Test arm rows convert to contrasts."""
        rows = [
            {"study_id": "S1", "treatment": "A", "n": "100", "events": "10"},
            {"study_id": "S1", "treatment": "B", "n": "100", "events": "20"},
        ]
        arms = arms_from_records(rows)
        assert arms[0].n == 100 and arms[0].events == 10
        (c,) = arms_from_records(rows, measure="OR")
        assert c.effect_size == pytest.approx(np.log(2.25))

    def test_arm_records_missing_n(self):
        """Test an arm row without a size is rejected."""
        with pytest.raises(ValidationError):
            arms_from_records([{"study_id": "S1", "treatment": "A", "events": 1}])


class TestSchema:
    """Tests for schema validation."""

    def test_valid_contrast(self):
        """Test a complete record passes."""
        ok, errors = validate_input({"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
                                     "effect_size": 0.5, "se": 0.2})
        assert ok
        assert errors == []

    def test_missing_precision(self):
        """Test a record without variance, SE or CI fails."""
        ok, errors = validate_input({"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
                                     "effect_size": 0.5})
        assert not ok
        assert any("variance" in e for e in errors)

    def test_field_errors(self):
        """Test type, range and ordering errors are all reported."""
        ok, errors = validate_input({"study_id": "S1", "treatment_a": "A", "treatment_b": "A",
                                     "effect_size": True, "variance": -1.0,
                                     "ci_lower": 1.0, "ci_upper": 0.5})
        assert not ok
        assert any("effect_size must be float" in e for e in errors)
        assert any("variance must be >" in e for e in errors)
        assert "ci_lower must be < ci_upper" in errors
        assert "treatment_a and treatment_b must differ" in errors

    def test_list_prefixes_items(self):
        """Test errors in a list name the offending item."""
        ok, errors = validate_input([
            {"study_id": "S1", "treatment_a": "A", "treatment_b": "B",
             "effect_size": 0.5, "variance": 0.04},
            {"study_id": "S2", "treatment_a": "A", "treatment_b": "B"},
        ])
        assert not ok
        assert all(e.startswith("Item 1: ") for e in errors)

    def test_arm_schema(self):
        """Test arm records."""
        assert validate_input({"study_id": "S1", "treatment": "A", "n": 10, "events": 3},
                              schema_type="arm")[0]
        ok, errors = validate_input({"study_id": "S1", "treatment": "A", "n": 10, "events": 12},
                                    schema_type="arm")
        assert not ok
        assert "events must be <= n" in errors

    def test_unknown_schema(self):
        """Test an unknown schema type fails validation."""
        ok, errors = validate_input({}, schema_type="dose")
        assert not ok

    def test_templates(self):
        """Test template formats."""
        header = generate_template("contrast", "csv_header")
        assert header.startswith("study_id,treatment_a,treatment_b,effect_size")
        assert json.loads(generate_template("arm", "json"))["n"] is None
        with pytest.raises(ValueError):
            generate_template("contrast", "xml")

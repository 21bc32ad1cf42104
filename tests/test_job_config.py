"""Tests for job_config module."""

import json

import jsonschema
import pytest

from astro_convert.config import DEFAULTS
from astro_convert.job_config import (
    JobConfig,
    load_job,
    load_schema,
    load_settings,
    validate_job_file,
)


@pytest.fixture
def valid_job_dict():
    """Valid job configuration dict."""
    return {
        "name": "M42_web",
        "inputs": ["lights/", "extra/M42_Ha.fits"],
        "output": "exports",
        "options": {
            "format": "jpeg",
            "quality": 80,
            "stretch": {"kind": "asinh"},
        },
        "naming": {"rule": "template", "template": "{object}_{seq}"},
    }


@pytest.fixture
def job_file(tmp_path, valid_job_dict):
    """Create job file."""
    path = tmp_path / "job.json"
    path.write_text(json.dumps(valid_job_dict))
    return path


def test_job_config_from_dict(valid_job_dict):
    """Test creating JobConfig from dict."""
    job = JobConfig.from_dict(valid_job_dict)

    assert job.name == "M42_web"
    assert job.inputs == ["lights/", "extra/M42_Ha.fits"]
    assert job.output == "exports"
    assert job.recursive is True
    assert job.naming.rule == "template"
    assert job.naming.template == "{object}_{seq}"


def test_job_config_normalizes_inputs(valid_job_dict):
    """Test that a single string input is normalized to a list."""
    valid_job_dict["inputs"] = "lights/"
    assert JobConfig.from_dict(valid_job_dict).inputs == ["lights/"]


def test_job_config_options(valid_job_dict):
    """Test options parsing."""
    job = JobConfig.from_dict(valid_job_dict)

    assert job.options.format == "jpeg"
    assert job.options.quality == 80
    assert job.options.stretch.kind == "asinh"
    assert job.options.dpi == DEFAULTS.dpi  # Default


def test_job_config_default_options():
    """Test default options when not specified."""
    job = JobConfig.from_dict({"inputs": ["a.fits"], "output": "out"})
    assert job.name == "convert"
    assert job.options == DEFAULTS
    assert job.naming.rule == "original"


def test_job_config_invalid_option(valid_job_dict):
    """Test that unknown options raise."""
    valid_job_dict["options"]["invalid_option"] = 123
    with pytest.raises(ValueError, match="invalid_option"):
        JobConfig.from_dict(valid_job_dict)


def test_precedence_preset_settings_job(valid_job_dict):
    """Test preset <- settings.json <- job options."""
    valid_job_dict["preset"] = "print"
    valid_job_dict["options"] = {"quality": 70}
    settings = {"options": {"dpi": 150, "quality": 60, "stretch": {"gamma": 2.0}}}
    job = JobConfig.from_dict(valid_job_dict, settings)

    assert job.options.format == "png"  # preset
    assert job.options.dpi == 150  # settings over preset
    assert job.options.quality == 70  # job over settings
    assert job.options.stretch.kind == "asinh"  # preset, merged with settings
    assert job.options.stretch.gamma == 2.0


def test_relative_paths_resolve_against_job_dir(tmp_path, valid_job_dict):
    """Test relative paths are resolved next to the job file."""
    job = JobConfig.from_dict(valid_job_dict, base_dir=tmp_path)
    assert job.output == str(tmp_path / "exports")
    assert job.inputs[0] == str(tmp_path / "lights/")


def test_load_job(job_file):
    """Test loading job from file."""
    job = load_job(job_file)
    assert job.name == "M42_web"
    assert job.output == str(job_file.parent / "exports")


def test_load_job_missing_file(tmp_path):
    """Test loading a non-existent job file."""
    with pytest.raises(FileNotFoundError):
        load_job(tmp_path / "nonexistent.json")


def test_schema_rejects_unknown_top_level(tmp_path, valid_job_dict):
    """Test the schema refuses unknown fields."""
    valid_job_dict["lights"] = {}
    path = tmp_path / "job.json"
    path.write_text(json.dumps(valid_job_dict))
    with pytest.raises(jsonschema.ValidationError):
        load_job(path)


def test_schema_naming_rule_enum(valid_job_dict):
    """Test naming rules are enumerated in the schema."""
    valid_job_dict["naming"]["rule"] = "random"
    with pytest.raises(jsonschema.ValidationError):
        jsonschema.validate(valid_job_dict, load_schema())


def test_validate_job_file_valid(job_file):
    """Test validating a valid job file."""
    valid, error = validate_job_file(job_file)
    assert valid is True
    assert error is None


def test_validate_job_file_invalid_json(tmp_path):
    """Test validating an invalid JSON file."""
    path = tmp_path / "bad.json"
    path.write_text("{ invalid json }")
    valid, error = validate_job_file(path)
    assert valid is False
    assert "Invalid JSON" in error


def test_validate_job_file_schema_error(tmp_path):
    """Test validating a file missing required fields."""
    path = tmp_path / "job.json"
    path.write_text(json.dumps({"name": "x"}))
    valid, error = validate_job_file(path)
    assert valid is False
    assert "Schema validation failed" in error


def test_validate_job_file_bad_option(tmp_path, valid_job_dict):
    """Test an invalid option value is reported."""
    valid_job_dict["options"] = {"format": "gif"}
    path = tmp_path / "job.json"
    path.write_text(json.dumps(valid_job_dict))
    valid, error = validate_job_file(path)
    assert valid is False
    assert "gif" in error


def test_validate_job_file_missing(tmp_path):
    """Test validating a missing file."""
    valid, error = validate_job_file(tmp_path / "missing.json")
    assert valid is False
    assert "not found" in error


def test_collect_files(tmp_path):
    """Test directories are searched and duplicates dropped."""
    lights = tmp_path / "lights"
    lights.mkdir()
    (lights / "a.fits").write_bytes(b"x")
    (lights / "b.png").write_bytes(b"x")
    (lights / "readme.txt").write_bytes(b"x")
    job = JobConfig.from_dict(
        {"inputs": ["lights", "lights/a.fits"], "output": "out"}, base_dir=tmp_path
    )
    files = job.collect_files()
    assert [f.name for f in files] == ["a.fits", "b.png"]


def test_load_settings(tmp_path):
    """Test settings.json loading."""
    assert load_settings(tmp_path) == {}
    (tmp_path / "settings.json").write_text(json.dumps({"options": {"dpi": 300}}))
    assert load_settings(tmp_path) == {"options": {"dpi": 300}}


def test_settings_applied_to_file(job_file):
    """Test settings passed to load_job."""
    job = load_job(job_file, {"options": {"dpi": 300}})
    assert job.options.dpi == 300

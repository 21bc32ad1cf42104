"""
Job file loading and validation.

A job file names the inputs, the output directory, export option overrides
and the naming rule:

    {
        "name": "m42_web",
        "inputs": ["lights/", "extra/M42_Ha.fits"],
        "output": "exports/",
        "preset": "web",
        "options": {"quality": 80, "stretch": {"kind": "asinh"}},
        "naming": {"rule": "template", "template": "{object}_{filter}_{seq}"}
    }
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import jsonschema

from .batch import find_images
from .config import (
    PRESETS,
    ExportOptions,
    merge_overrides,
    validate_options,
    with_overrides,
)
from .naming import NamingOptions

SCHEMA_PATH = Path(__file__).parent / "convert_schema.json"


def load_schema() -> dict:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


@dataclass
class JobConfig:
    """Parsed conversion job."""

    name: str
    inputs: list[str]
    output: str
    recursive: bool = True
    pattern: Optional[str] = None
    exclude: list[str] = field(default_factory=list)
    options: ExportOptions = field(default_factory=ExportOptions)
    naming: NamingOptions = field(default_factory=NamingOptions)

    @classmethod
    def from_dict(cls, data: dict, settings: Optional[dict] = None,
                  base_dir: Optional[Path] = None) -> "JobConfig":
        """
        Create JobConfig from dictionary.

        Args:
            data: Job definition dict (from JSON)
            settings: Optional user settings (from settings.json)
            base_dir: Directory relative input/output paths resolve against
        """
        inputs = data["inputs"]
        if isinstance(inputs, str):
            inputs = [inputs]

        # Precedence: preset <- settings.json <- job options
        preset = PRESETS[data["preset"]] if data.get("preset") else {}
        settings_options = settings.get("options", {}) if settings else {}
        merged = merge_overrides(preset, settings_options, data.get("options", {}))
        options = with_overrides(merged)
        validate_options(options)

        def resolve(path: str) -> str:
            if base_dir is None or Path(path).is_absolute():
                return path
            return str(Path(base_dir) / path)

        return cls(
            name=data.get("name") or "convert",
            inputs=[resolve(p) for p in inputs],
            output=resolve(data["output"]),
            recursive=data.get("recursive", True),
            pattern=data.get("pattern"),
            exclude=list(data.get("exclude", [])),
            options=options,
            naming=NamingOptions(**data.get("naming", {})),
        )

    @classmethod
    def from_file(cls, path: Path, settings: Optional[dict] = None) -> "JobConfig":
        """Load and validate a job file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Job file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        jsonschema.validate(data, load_schema())
        return cls.from_dict(data, settings, base_dir=path.parent)

    def collect_files(self) -> list[Path]:
        """Expand inputs into image files; directories are searched."""
        files: list[Path] = []
        for entry in self.inputs:
            path = Path(entry)
            if path.is_dir():
                files.extend(find_images(path, self.recursive, self.pattern, self.exclude))
            else:
                files.append(path)
        # Keep first occurrence order
        return list(dict.fromkeys(files))


def load_job(path: Path, settings: Optional[dict] = None) -> JobConfig:
    """Load a job configuration file."""
    return JobConfig.from_file(path, settings)


def load_settings(root: Path) -> dict:
    """
    Load user settings from settings.json.

    Returns empty dict if file doesn't exist.
    """
    settings_path = Path(root) / "settings.json"
    if settings_path.exists():
        with open(settings_path, "r", encoding="utf-8") as f:
            return json.load(f)
    return {}


def validate_job_file(path: Path) -> tuple[bool, Optional[str]]:
    """
    Validate a job file without running it.

    Returns (is_valid, error_message).
    """
    try:
        load_job(path)
        return True, None
    except FileNotFoundError as e:
        return False, str(e)
    except json.JSONDecodeError as e:
        return False, f"Invalid JSON: {e}"
    except jsonschema.ValidationError as e:
        return False, f"Schema validation failed: {e.message}"
    except KeyError as e:
        return False, f"Missing required field: {e}"
    except (TypeError, ValueError) as e:
        return False, str(e)  # Unknown or invalid option

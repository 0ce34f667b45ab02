"""YAML configuration loading with include directive support."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import yaml
from platformdirs import user_config_dir
from pydantic_settings import BaseSettings, YamlConfigSettingsSource

from forkcascade.core.log import logger

CONFIG_FILENAME = "forkcascade.yaml"
DEFAULTS_FILE = Path(__file__).parent.parent / "defaults" / "default.yaml"


def deep_merge(base: dict, override: dict) -> dict:
    """Return a new dict with override deep-merged into base."""
    result = base.copy()
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def cli_includes(argv: list[str] | None = None) -> list[str]:
    """Collect --include values before pydantic parses the CLI."""
    argv = sys.argv if argv is None else argv
    includes = []
    i = 1
    while i < len(argv):
        if argv[i] == "--include" and i + 1 < len(argv):
            includes.append(argv[i + 1])
            i += 1
        i += 1
    return includes


def load_yaml_with_includes(filepath: Path, visited: set[Path] | None = None) -> dict:
    """Load a YAML file, resolving include: directives recursively.

    Included files are merged first so the including file wins.

    Raises:
        ValueError: On a circular include
    """
    filepath = filepath.resolve()
    visited = set() if visited is None else visited
    if filepath in visited:
        raise ValueError(f"Circular include: {filepath}")
    visited.add(filepath)

    with open(filepath) as f:
        data = yaml.safe_load(f) or {}

    includes = data.pop("include", None) or []
    if isinstance(includes, str):
        includes = [includes]

    merged: dict = {}
    for inc in includes:
        inc_path = Path(inc).expanduser()
        if not inc_path.is_absolute():
            inc_path = filepath.parent / inc_path
        logger.debug("Including configuration file", include_file=str(inc_path),
                     included_from=str(filepath))
        merged = deep_merge(merged, load_yaml_with_includes(inc_path, visited.copy()))

    return deep_merge(merged, data)


class YamlWithIncludesSettingsSource(YamlConfigSettingsSource):
    """YAML settings source with include: and --include support.

    Deep merges, lowest priority first:
    package defaults < user config < project config < CLI includes.
    """

    def __init__(self, settings_cls: type[BaseSettings], yaml_file=None):
        includes = cli_includes()
        base = yaml_file or settings_cls.model_config.get("yaml_file")
        if base and includes:
            yaml_file = ([base] if isinstance(base, (str, os.PathLike)) else list(base)) + includes
        elif includes:
            yaml_file = includes
        else:
            yaml_file = base

        super().__init__(settings_cls, yaml_file)

    def _read_files(self, files, *args, **kwargs):
        # Newer pydantic-settings also pass deep_merge; files are always
        # deep-merged here.
        candidates = [
            DEFAULTS_FILE,
            Path(user_config_dir("forkcascade", appauthor=False)) / CONFIG_FILENAME,
        ]
        if files:
            if isinstance(files, (str, os.PathLike)):
                files = [files]
            candidates.extend(Path(f).expanduser() for f in files)

        result: dict = {}
        for file_path in candidates:
            if file_path.is_file():
                logger.debug("Loading configuration", file=str(file_path))
                result = deep_merge(result, load_yaml_with_includes(file_path))
            else:
                logger.debug("Configuration file not found (skipping)",
                             file=str(file_path))
        return result

"""Configuration loading helpers for grant-harvester."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import yaml

from ..errors import ConfigurationError
from .models import HarvesterSettings, SourceConfiguration

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
SETTINGS_FILENAME = "settings.yaml"
SOURCE_CONFIG_SUFFIX = ".yaml"
HOME_ENV_VAR = "GRANT_HARVESTER_HOME"


def _slugify(name: str) -> str:
    return "".join(ch.lower() if ch.isalnum() else "-" for ch in name).strip("-")


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    if path.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from the harvester home directory."""

    project_root: Path | None = None
    data_dir: Path | None = None
    sources_dir: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get(HOME_ENV_VAR)
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.data_dir = (root / "data").resolve()
        self.sources_dir = (self.data_dir / "sources").resolve()
        self.logs_dir = (root / "logs").resolve()
        self.ensure_directories()

    def ensure_directories(self) -> None:
        for directory in (self.data_dir, self.sources_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def settings_path(self) -> Path:
        return self.data_dir / SETTINGS_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._settings_cache: HarvesterSettings | None = None

    # ------------------------------------------------------------------
    # Global settings
    # ------------------------------------------------------------------
    def load_settings(self) -> HarvesterSettings:
        if self._settings_cache is not None:
            return self._settings_cache
        path = self.locator.settings_path()
        if path.exists():
            settings = HarvesterSettings.model_validate(_read_file(path))
        else:
            settings = HarvesterSettings()
            self.save_settings(settings)
        self._settings_cache = settings
        return settings

    def save_settings(self, settings: HarvesterSettings) -> None:
        _write_file(self.locator.settings_path(), settings.model_dump(mode="json"))
        self._settings_cache = settings

    def database_path(self) -> Path:
        return self.load_settings().resolved_database_path(self.locator.project_root)

    # ------------------------------------------------------------------
    # Source definitions
    # ------------------------------------------------------------------
    def source_path(self, source_id: str) -> Path:
        return self.locator.sources_dir / f"{_slugify(source_id)}{SOURCE_CONFIG_SUFFIX}"

    def list_source_files(self) -> Iterable[Path]:
        for path in sorted(self.locator.sources_dir.glob("*")):
            if path.is_file() and path.suffix in CONFIG_EXTENSIONS:
                yield path

    def list_sources(self) -> list[SourceConfiguration]:
        return [self.load_source(path) for path in self.list_source_files()]

    def load_source(self, identifier: str | Path) -> SourceConfiguration:
        path = identifier if isinstance(identifier, Path) else self.source_path(identifier)
        if not path.exists():
            raise FileNotFoundError(f"Source configuration not found: {identifier}")
        return SourceConfiguration.model_validate(_read_file(path))

    def save_source(self, config: SourceConfiguration) -> Path:
        path = self.source_path(config.id)
        _write_file(path, config.model_dump(mode="json", exclude_none=True))
        return path

    def delete_source(self, source_id: str) -> None:
        path = self.source_path(source_id)
        if path.exists():
            path.unlink()

    def import_sources(self, source_manager) -> list[SourceConfiguration]:
        """Seed ``source_manager`` with every source file; existing ids are updated."""

        imported: list[SourceConfiguration] = []
        for config in self.list_sources():
            if source_manager.source_exists(config.id):
                source_manager.update_source(config.id, config.model_dump(exclude={"id"}))
            else:
                source_manager.create_source(config)
            imported.append(config)
        return imported


__all__ = ["CONFIG_EXTENSIONS", "ConfigLocator", "ConfigRepository", "HOME_ENV_VAR"]

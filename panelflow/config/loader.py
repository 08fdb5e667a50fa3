"""
Configuration loader for PanelFlow plants.

Each plant lives in plants/<plant_id>/config.yaml. Loading parses the
YAML, validates it into a PlantConfig and caches the result per plant id;
the orchestrator bypasses the cache when criteria are hot-reloaded.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from panelflow.config.schema import PlantConfig
from panelflow.exceptions import ConfigurationError

DEFAULT_PLANT_ID = "default"

# Module-level cache: plant_id -> PlantConfig
_loaded_configs: dict[str, PlantConfig] = {}


def find_plants_dir() -> Path:
    """Locate the plants/ directory relative to the project root."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        candidate = parent / "plants"
        if candidate.is_dir():
            return candidate
    raise FileNotFoundError(
        "Could not find 'plants/' directory. "
        "Ensure you're running from the project root."
    )


def parse_plant_config(
    raw: Optional[dict[str, Any]],
    plant_id: str,
    source: str = "<memory>",
) -> PlantConfig:
    """
    Validate a raw config mapping into a PlantConfig.

    Raises:
        ConfigurationError: If the mapping is empty or fails validation.
    """
    if not raw:
        raise ConfigurationError(
            f"Config is empty: {source}",
            plant_id=plant_id,
            config_path=source,
        )

    raw = dict(raw)
    # Inject plant_id if not present in the file
    if "plant_id" not in raw:
        raw["plant_id"] = plant_id

    try:
        return PlantConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid config for plant '{plant_id}':\n{e}",
            plant_id=plant_id,
            config_path=source,
        ) from e


def load_plant_config(
    plant_id: str = DEFAULT_PLANT_ID,
    config_path: Optional[str | Path] = None,
    *,
    use_cache: bool = True,
) -> PlantConfig:
    """
    Load and validate a plant's configuration.

    Args:
        plant_id: The plant identifier (e.g. 'default').
        config_path: Optional explicit path to config.yaml.
                     If not provided, looks in plants/{plant_id}/config.yaml.
        use_cache: Return a previously loaded config for this plant_id.
                   Pass False to re-read the file (hot reload).

    Returns:
        Validated PlantConfig instance.

    Raises:
        ConfigurationError: If the file is missing, empty or invalid.
    """
    if use_cache and plant_id in _loaded_configs:
        return _loaded_configs[plant_id]

    if config_path is None:
        try:
            plants_dir = find_plants_dir()
        except FileNotFoundError as e:
            raise ConfigurationError(str(e), plant_id=plant_id) from e
        config_path = plants_dir / plant_id / "config.yaml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(
            f"Config not found: {config_path}\n"
            f"Create plants/{plant_id}/config.yaml to define this plant.",
            plant_id=plant_id,
            config_path=str(config_path),
        )

    with open(config_path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Config is not valid YAML: {config_path}\n{e}",
                plant_id=plant_id,
                config_path=str(config_path),
            ) from e

    config = parse_plant_config(raw, plant_id, source=str(config_path))
    _loaded_configs[plant_id] = config
    return config


def get_plant_config(plant_id: str = DEFAULT_PLANT_ID) -> PlantConfig:
    """Cached config of a plant loaded earlier in this process."""
    if plant_id not in _loaded_configs:
        raise ConfigurationError(
            f"Plant {plant_id!r} has not been loaded; call load_plant_config first",
            plant_id=plant_id,
        )
    return _loaded_configs[plant_id]


def list_available_plants() -> list[str]:
    """List all plants that have a config.yaml file."""
    try:
        plants_dir = find_plants_dir()
    except FileNotFoundError:
        return []

    plants = []
    for entry in plants_dir.iterdir():
        if entry.is_dir() and (entry / "config.yaml").exists():
            plants.append(entry.name)
    return sorted(plants)


def clear_cache() -> None:
    """Forget every cached plant config."""
    _loaded_configs.clear()

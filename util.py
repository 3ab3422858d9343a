import json
import logging
import os
from typing import (
    Any,
    Sequence,
    Type,
    TypeVar,
)

import aiofiles
import yaml
from pydantic import ValidationError

from homerules.errors import ConfigError

logger = logging.getLogger(__name__)

# Type for any model with model_dump method
ModelT = TypeVar("ModelT", bound=Any)

_YAML_SUFFIXES = (".yaml", ".yml")


def configure_logging(level: str = "INFO") -> None:
    """Send log records to the console in a single consistent format."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
    )
    root.addHandler(handler)

    # Silence noisy httpx request logging
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _is_yaml(filepath: str) -> bool:
    return filepath.lower().endswith(_YAML_SUFFIXES)


async def save_models(models: Sequence[ModelT], filepath: str) -> None:
    """Save a sequence of Pydantic models to a JSON or YAML file.

    Args:
        models: Sequence of models with model_dump method
        filepath: Path to save the file, a .yaml/.yml suffix selects YAML

    Raises:
        ConfigError: If the file cannot be written
    """
    data = [model.model_dump(mode="json", by_alias=True, exclude_none=True) for model in models]
    if _is_yaml(filepath):
        content = yaml.safe_dump(data, sort_keys=False)
    else:
        content = json.dumps(data, indent=2)
    try:
        async with aiofiles.open(filepath, "w", encoding="utf-8") as f:
            await f.write(content)
    except (IOError, OSError) as e:
        raise ConfigError(f"Failed to save models to {filepath}: {e}") from e


async def load_models(model_class: Type[ModelT], filepath: str) -> list[ModelT]:
    """Load a sequence of Pydantic models from a JSON or YAML file.

    Entries which fail validation are logged and skipped, the others still load.

    Args:
        model_class: The class to validate model data against
        filepath: Path to the file, a .yaml/.yml suffix selects YAML

    Returns:
        List of validated models, or empty list if file doesn't exist

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    if not os.path.exists(filepath):
        logger.info("%s does not exist, nothing to load", filepath)
        return []

    logger.info("Loading %s from %s", model_class.__name__, filepath)
    try:
        async with aiofiles.open(filepath, "r", encoding="utf-8") as f:
            content = await f.read()
    except (IOError, OSError) as e:
        raise ConfigError(f"Failed to read models from {filepath}: {e}") from e

    try:
        models_data = yaml.safe_load(content) if _is_yaml(filepath) else json.loads(content)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Invalid content in file {filepath}: {e}") from e

    if models_data is None:
        return []
    if not isinstance(models_data, list):
        raise ConfigError(f"Expected a list of entries in {filepath}")

    models = []
    for index, model_data in enumerate(models_data):
        try:
            models.append(model_class.model_validate(model_data))
        except ValidationError as e:
            name = model_data.get("id") or model_data.get("name") if isinstance(model_data, dict) else None
            logger.error("Skipping entry %d (%s) of %s: %s", index, name, filepath, e)
    return models

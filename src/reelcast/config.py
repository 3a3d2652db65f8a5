import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import ReelcastConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
CONFIG_PATH_ENV = "REELCAST_CONFIG"


def get_config_value(config: Union[ReelcastConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: ReelcastConfig model or dict
        path: Dot-separated path like "generation_queue.max_attempts"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, ReelcastConfig):
        config = config.model_dump()

    value = config
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> ReelcastConfig:
    """
    Resolve config: Built-in defaults < Default YAML < Local YAML (or
    ``config_path`` / $REELCAST_CONFIG) < CLI.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    # 1. Built-in defaults, so a partial YAML file is enough
    config_data = ReelcastConfig().model_dump()

    # 2. Default YAML
    config_data = merge_dicts(config_data, load_yaml(DEFAULT_CONFIG_PATH))

    # 3. Local overrides
    override_path = config_path or os.environ.get(CONFIG_PATH_ENV)
    local_path = Path(override_path) if override_path else LOCAL_CONFIG_PATH
    local_data = load_yaml(local_path)
    if local_data:
        logger.debug("Applying config overrides from %s", local_path)
    config_data = merge_dicts(config_data, local_data)

    # 4. Validate and apply CLI overrides
    config = ReelcastConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)

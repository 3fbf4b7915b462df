import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from abrpub.config.models import AppConfig

logger = logging.getLogger(__name__)

# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "ABRPUB_S3_ENDPOINT": ("storage", "endpoint_url"),
    "ABRPUB_S3_BUCKET": ("storage", "bucket"),
    "ABRPUB_S3_REGION": ("storage", "region"),
    "ABRPUB_S3_ACCESS_KEY_ID": ("storage", "access_key_id"),
    "ABRPUB_S3_SECRET_ACCESS_KEY": ("storage", "secret_access_key"),
    "ABRPUB_WEBHOOK_URL": ("webhook", "url"),
    "ABRPUB_CATALOG_PATH": ("catalog", "path"),
    "ABRPUB_WORKSPACE_DIR": ("general", "workspace_dir"),
}


def _apply_env(data: Dict[str, Any], environ) -> Dict[str, Any]:
    for var, (section, field) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            data[section] = {**(data.get(section) or {}), field: value}
    return data


def load_config(config_path: Optional[Path] = None, env_file: Optional[Path] = None, environ=None) -> AppConfig:
    """
    Load configuration from a YAML file, then apply environment overrides.

    Storage credentials and the webhook URL normally live in the environment
    (or a .env file) rather than in the YAML file.
    """
    if environ is None:
        load_dotenv(dotenv_path=env_file)
        environ = os.environ

    data: Dict[str, Any] = {}
    if config_path is not None:
        config_file = Path(config_path)
        if config_file.exists():
            with open(config_file, "r") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config file {config_file} must contain a mapping, got {type(data).__name__}")
            # a section key with nothing under it parses as None
            data = {section: values for section, values in data.items() if values is not None}
        else:
            logger.warning(f"Config file not found at {config_file}, using defaults")

    return AppConfig(**_apply_env(data, environ))

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "VOD_REDIS_URL": "queue.redis_url",
    "VOD_QUEUE_BACKEND": "queue.backend",
    "VOD_QUEUE_NAME": "queue.name",
    "VOD_STORAGE_BACKEND": "storage.backend",
    "VOD_S3_ENDPOINT_URL": "storage.endpoint_url",
    "VOD_S3_PUBLIC_ENDPOINT_URL": "storage.public_endpoint_url",
    "VOD_S3_ACCESS_KEY": "storage.access_key",
    "VOD_S3_SECRET_KEY": "storage.secret_key",
    "VOD_S3_REGION": "storage.region",
    "VOD_BUCKET_RAW": "storage.bucket_raw",
    "VOD_BUCKET_PROCESSED": "storage.bucket_processed",
    "VOD_RECORDS_DB": "records.db_path",
    "VOD_ENCODER": "encoder.backend",
    "VOD_FFMPEG_PATH": "ffmpeg.ffmpeg_path",
    "VOD_WORK_DIR": "transcode.work_dir",
    "VOD_LOG_LEVEL": "worker.log_level",
    "VOD_LOG_FORMAT": "worker.log_format",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Build a nested override dict from VOD_* environment variables."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, dotted in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        section, key = dotted.split(".")
        overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """
    Resolve config: Default < Local < --config file < Environment < CLI
    Returns validated Pydantic PipelineConfig model.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        config_data = merge_dicts(config_data, load_yaml(path))

    config_data = merge_dicts(config_data, env_overrides(environ))

    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)

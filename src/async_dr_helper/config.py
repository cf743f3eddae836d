from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
import os

import structlog
import yaml

logger = structlog.get_logger(__name__)

DEFAULT_SETTINGS_PATH = "~/.config/asyncDRhelper.conf"


@dataclass(frozen=True)
class AppConfig:
    settings_path: Path = Path(os.getenv("ADRH_SETTINGS_PATH", DEFAULT_SETTINGS_PATH)).expanduser()
    log_file: Path = Path(os.getenv("ADRH_LOG_FILE", "./async-dr-helper.log"))
    log_level: str = os.getenv("ADRH_LOG_LEVEL", "info")
    poll_interval_seconds: float = float(os.getenv("ADRH_POLL_INTERVAL_SECONDS", "5"))
    poll_max_attempts: int = int(os.getenv("ADRH_POLL_MAX_ATTEMPTS", "60"))
    restore_timeout_seconds: float = float(os.getenv("ADRH_RESTORE_TIMEOUT_SECONDS", "3600"))
    exec_timeout_seconds: int = int(os.getenv("ADRH_EXEC_TIMEOUT_SECONDS", "60"))


@dataclass(frozen=True)
class S3Settings:
    bucket: str = ""
    region: str = ""
    endpoint_url: str = ""
    path_style: bool = True
    insecure: bool = False
    access_key_id: str = ""
    secret_access_key: str = ""
    prefix: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.bucket and self.access_key_id and self.secret_access_key)


@dataclass(frozen=True)
class ReplicationSettings:
    primary_kubeconfig_path: str = ""
    secondary_kubeconfig_path: str = ""
    dedicated_pool: bool = False
    s3: S3Settings = field(default_factory=S3Settings)

    def with_kubeconfig_path(self, cluster_name: str, path: str) -> ReplicationSettings:
        if cluster_name == "primary":
            return replace(self, primary_kubeconfig_path=path)
        if cluster_name == "secondary":
            return replace(self, secondary_kubeconfig_path=path)
        raise SettingsError(f"unknown cluster name '{cluster_name}'; expected 'primary' or 'secondary'")


class SettingsError(RuntimeError):
    """Raised when persisted settings cannot be written or are malformed."""


_S3_KEYS = {
    "bucket": "bucket",
    "region": "region",
    "endpointUrl": "endpoint_url",
    "pathStyle": "path_style",
    "insecure": "insecure",
    "accessKeyId": "access_key_id",
    "secretAccessKey": "secret_access_key",
    "prefix": "prefix",
}


def settings_from_mapping(raw: dict[str, Any]) -> ReplicationSettings:
    raw_s3 = raw.get("s3") or {}
    if not isinstance(raw_s3, dict):
        raise SettingsError("'s3' must be a mapping")

    s3_values: dict[str, Any] = {}
    for yaml_key, attribute in _S3_KEYS.items():
        if yaml_key not in raw_s3 or raw_s3[yaml_key] is None:
            continue
        value = raw_s3[yaml_key]
        if attribute in {"path_style", "insecure"}:
            s3_values[attribute] = _as_bool(value)
        else:
            s3_values[attribute] = str(value)

    return ReplicationSettings(
        primary_kubeconfig_path=str(raw.get("kubeConfigPrimaryPath") or ""),
        secondary_kubeconfig_path=str(raw.get("kubeConfigSecondaryPath") or ""),
        dedicated_pool=_as_bool(raw.get("dedicatedPool", False)),
        s3=S3Settings(**s3_values),
    )


def settings_to_mapping(settings: ReplicationSettings) -> dict[str, Any]:
    return {
        "kubeConfigPrimaryPath": settings.primary_kubeconfig_path,
        "kubeConfigSecondaryPath": settings.secondary_kubeconfig_path,
        "dedicatedPool": settings.dedicated_pool,
        "s3": {yaml_key: getattr(settings.s3, attribute) for yaml_key, attribute in _S3_KEYS.items()},
    }


def load_settings(path: Path) -> ReplicationSettings:
    """Read persisted settings, rewriting the file with defaults if it is missing or unreadable."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("settings file not found, writing defaults", path=str(path))
        settings = ReplicationSettings()
        save_settings(path, settings)
        return settings

    try:
        parsed = yaml.safe_load(content) or {}
        if not isinstance(parsed, dict):
            raise SettingsError("settings file must contain a YAML mapping")
        return settings_from_mapping(parsed)
    except (yaml.YAMLError, SettingsError) as error:
        logger.warning("could not understand settings, writing defaults", path=str(path), error=str(error))
        settings = ReplicationSettings()
        save_settings(path, settings)
        return settings


def save_settings(path: Path, settings: ReplicationSettings) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        # The file holds the S3 secret key.
        descriptor = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            os.chmod(path, 0o600)
            yaml.safe_dump(settings_to_mapping(settings), handle, sort_keys=False)
    except OSError as error:
        raise SettingsError(f"Could not write settings to {path}: {error}") from error


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}

"""
Configuration Management Module

Loads the Face ID gate settings from config.yaml and keeps a single
module-level copy so every component reads the same values.

The file is looked up in this order:
    1. The path in the FACEID_CONFIG environment variable
    2. config.yaml in the project root (first parent directory containing it)

Usage:
    from faceid.config import get_config, get_lockout_config
    config = get_config()
    max_failures = get_lockout_config()["max_failures"]
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


CONFIG_ENV_VAR = "FACEID_CONFIG"

# Store the singleton instance (module-level variable)
_config_instance: Optional[Dict[str, Any]] = None


def get_project_root() -> Path:
    """
    Find the project root directory.

    The project root is identified by the presence of config.yaml. This
    walks up the directory tree from this file's location until it finds
    one.

    Returns:
        Path: The absolute path to the project root directory.

    Raises:
        FileNotFoundError: If config.yaml cannot be found in any parent directory.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        if (current_dir / "config.yaml").exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "Could not find config.yaml in any parent directory. "
        f"Run from within the project directory or set {CONFIG_ENV_VAR}."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Optional path to the config file. If not provided,
                     FACEID_CONFIG is consulted, then the project root.

    Returns:
        Dict containing all configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the config file contains invalid YAML.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR)

    if config_path is None:
        path = get_project_root() / "config.yaml"
    else:
        path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    return config


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Get the configuration singleton.

    Args:
        reload: If True, forces reloading the configuration from disk.

    Returns:
        Dict containing all configuration values.

    Example:
        config = get_config()
        timeout_ms = config["camera"]["acquire_timeout_ms"]
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Get a specific top-level section from the configuration.

    Args:
        section_name: Name of the section (e.g., "camera", "lockout").

    Returns:
        Dict containing the section's configuration values.

    Raises:
        KeyError: If the section doesn't exist in the configuration.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name]


def get_camera_config() -> Dict[str, Any]:
    """Get camera acquisition configuration."""
    return get_section("camera")


def get_capture_config() -> Dict[str, Any]:
    """Get capture loop configuration."""
    return get_section("capture")


def get_face_detection_config() -> Dict[str, Any]:
    """Get MediaPipe face detection configuration."""
    return get_section("face_detection")


def get_matching_config() -> Dict[str, Any]:
    """Get matcher configuration."""
    return get_section("matching")


def get_lockout_config() -> Dict[str, Any]:
    """Get attempt ledger / lockout configuration."""
    return get_section("lockout")


def get_storage_config() -> Dict[str, Any]:
    """Get storage configuration."""
    return get_section("storage")


def get_api_config() -> Dict[str, Any]:
    """Get API configuration."""
    return get_section("api")


def get_server_config() -> Dict[str, Any]:
    """
    Get host and port for the local API server.

    Returns:
        Dict with host and port parsed from api.base_url.
    """
    base_url = get_api_config().get("base_url", "http://localhost:8010")

    host = "127.0.0.1"
    port = 8010

    try:
        url_part = base_url.split("//")[-1]
        if ":" in url_part:
            host_part, port_str = url_part.rsplit(":", 1)
            port = int(port_str.rstrip("/"))
            if host_part != "localhost":
                host = host_part
    except (ValueError, IndexError):
        pass

    return {"host": host, "port": port}


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging from the "logging" section.

    Only entry points (the API app and the scripts) call this; library
    modules just create their own module logger.
    """
    log_config = get_config().get("logging", {})
    logging.basicConfig(
        level=getattr(logging, (level or log_config.get("level", "INFO")).upper(), logging.INFO),
        format=log_config.get(
            "format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ),
    )

# config_service.py
import os
import platform
import json
import logging

from blobsaver.signed_versions import DEFAULT_API

TSSCHECKER_WINDOWS = "tsschecker.exe"
TSSCHECKER_UNIX = "tsschecker"
DEFAULT_SAVE_PATH = os.path.join(os.path.expanduser("~"), "Blobs")
CONFIG_FILENAME = "config.json"

def get_default_config() -> dict:
    return {
        "tsschecker_path": TSSCHECKER_WINDOWS if platform.system() == "Windows" else TSSCHECKER_UNIX,
        "save_path": DEFAULT_SAVE_PATH,
        # seconds; None waits for tsschecker forever
        "timeout_seconds": None,
        "failure_policy": "abort",
        "signed_versions_api": DEFAULT_API,
        # Optional user-set defaults for the form:
        "ecid": "",
        "device_identifier": "",
        "device_name": "",
        "board_config": "",
    }

def load_config(base_dir: str) -> dict:
    """Load config.json from base_dir; merge with defaults."""
    config = get_default_config()
    path = os.path.join(base_dir, CONFIG_FILENAME)
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                file_cfg = json.load(f)
            config.update(file_cfg or {})
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to load {path} ({e}); using defaults.")
    return config

def save_config(base_dir: str, cfg: dict) -> None:
    """Write config.json to base_dir."""
    path = os.path.join(base_dir, CONFIG_FILENAME)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)

import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path

import yaml

_ENV_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def expand_env(value: str) -> str:
    """Expands ${VAR} placeholders; unset variables expand to an empty string."""
    return _ENV_PLACEHOLDER.sub(lambda match: os.environ.get(match.group(1), ""), value)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def to_hex(value) -> str:
    """Normalizes bytes-like or str transaction hashes to 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = str(value)
    return value if value.startswith("0x") else f"0x{value}"

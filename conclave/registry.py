"""Committee roster and TOML configuration loader.

Loads the engine policy from defaults.toml and the committee roster from
committee.toml. Both default to the files shipped in conclave/config/.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

from pydantic import ValidationError

from conclave.consensus.committee import Committee
from conclave.errors import ConfigurationError
from conclave.schemas.committee import CommitteeMember
from conclave.schemas.engine import EngineConfig

# Default config directory inside the conclave package
_CONFIG_DIR = Path(__file__).parent / "config"


def load_engine_config(config_path: Path | None = None) -> EngineConfig:
    """Load engine defaults and per-phase policies from a TOML file.

    Args:
        config_path: Path to defaults.toml. Defaults to conclave/config/defaults.toml.

    Returns:
        EngineConfig with values from the [engine] section; missing keys
        keep their model defaults.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ConfigurationError: If a value is invalid (unknown phase,
            threshold outside (0, 1], ...).
    """
    path = config_path or _CONFIG_DIR / "defaults.toml"
    if not path.exists():
        raise FileNotFoundError(f"Engine config not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    engine_section = raw.get("engine", {})
    try:
        return EngineConfig.model_validate(engine_section)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid engine config in {path}: {exc}") from exc


def load_committee(config_path: Path | None = None) -> Committee:
    """Load the committee roster from a TOML file.

    Args:
        config_path: Path to committee.toml. Defaults to conclave/config/committee.toml.

    Returns:
        Committee with one member per [[members]] entry.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If there is no [[members]] array.
        ConfigurationError: If a member entry is invalid or duplicated.
    """
    path = config_path or _CONFIG_DIR / "committee.toml"
    if not path.exists():
        raise FileNotFoundError(f"Committee roster not found: {path}")

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    entries = raw.get("members")
    if not entries or not isinstance(entries, list):
        raise ValueError(f"No [[members]] entries found in {path}")

    members: list[CommitteeMember] = []
    for entry in entries:
        try:
            members.append(CommitteeMember.model_validate(entry))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid committee member in {path}: {exc}") from exc

    return Committee(members)

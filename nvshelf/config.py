"""Where shelves live and who owns them, optionally loaded from a YAML file."""

from __future__ import annotations

import os

import yaml

from .common import NvmmError
from .shelf_manager import get_shelf_manager

DEFAULT_SHELF_BASE = "/dev/shm"
DEFAULT_SHELF_USER = os.environ.get("USER") or os.environ.get("LOGNAME") or "nvmm"


def _read_document(path: str | os.PathLike):
    """Parse a YAML file keeping every scalar as a string; None if it is missing."""
    try:
        with open(path, encoding="utf-8") as stream:
            return yaml.load(stream, Loader=yaml.BaseLoader)
    except FileNotFoundError:
        return None
    except yaml.YAMLError as exc:
        raise NvmmError(f"Cannot parse the NVMM config file at {path}: {exc}") from exc


class Config:
    """Shelf base directory, shelf owner and the root and epoch shelf paths."""

    def __init__(self, base: str | None = None, user: str | None = None) -> None:
        self.shelf_base = base or DEFAULT_SHELF_BASE
        self.shelf_user = user or DEFAULT_SHELF_USER
        self.root_shelf_path = ""
        self.epoch_shelf_path = ""
        self.setup()

    def __repr__(self) -> str:
        return f"Config(shelf_base={self.shelf_base!r}, shelf_user={self.shelf_user!r})"

    def load_config_file(self, path: str | os.PathLike | None) -> None:
        """Take shelf_base and shelf_user from the ``nvmm`` section of a YAML file.

        An empty path leaves the configuration as it is.
        """
        if not path:
            return
        document = _read_document(path)
        if document is None or document == "":
            raise NvmmError(f"Cannot find the NVMM config file at {path}")
        section = document.get("nvmm") if isinstance(document, dict) else None
        if not isinstance(section, dict):
            raise NvmmError("Invalid NVMM config format")
        for key, attribute in (("shelf_base", "shelf_base"), ("shelf_user", "shelf_user")):
            value = section.get(key)
            if not value:
                continue
            if not isinstance(value, str):
                raise NvmmError(f"Invalid NVMM config format: {key} must be a scalar")
            setattr(self, attribute, value)
        self.setup()

    def print_config_file(self, path: str | os.PathLike) -> None:
        """Print the entries of the ``nvmm`` section of a YAML file."""
        document = _read_document(path)
        if document is None or document == "":
            print(f"Cannot find the NVMM config file at {path}")
            return
        section = document.get("nvmm") if isinstance(document, dict) else None
        if not isinstance(section, dict):
            print("Invalid NVMM config format")
            return
        for key, value in section.items():
            if isinstance(value, str) and value != "":
                print(f"{key}: {value}")
            elif isinstance(value, list):
                print("Sequence...")
            elif isinstance(value, dict):
                print(f"{key}: ")
                for inner_key, inner_value in value.items():
                    print(f" {inner_key}: {inner_value}")
            else:
                print("Default...")

    def print_config(self) -> None:
        print("NVMM Config ")
        print(f"- shelf_base: {self.shelf_base}")
        print(f"- shelf_user: {self.shelf_user}")

    def setup(self) -> None:
        """Derive the shelf paths and drop every registered shelf mapping."""
        self.root_shelf_path = f"{self.shelf_base}/{self.shelf_user}_NVMM_ROOT"
        self.epoch_shelf_path = f"{self.shelf_base}/{self.shelf_user}_NVMM_EPOCH"
        get_shelf_manager().reset()


_config: Config | None = None


def get_config() -> Config:
    """Return the process-wide configuration, creating the default one if needed."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def set_config(config: Config) -> None:
    """Replace the process-wide configuration."""
    global _config
    if not isinstance(config, Config):
        raise TypeError(f"expected a Config, got {type(config).__name__}")
    _config = config
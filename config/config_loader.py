import os
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'


class SectionProxy(Mapping):
    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if isinstance(value, dict):
            return SectionProxy(value)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return value

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    def __init__(self, config_path: Optional[str] = None):
        path = config_path or os.getenv('LOSSGUARD_CONFIG') or DEFAULT_CONFIG_PATH
        self.config_path = Path(path)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        return self._resolve_env_vars(raw)

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str) and node.startswith('${') and node.endswith('}'):
            env_key, _, default = node[2:-1].partition(':-')
            return os.getenv(env_key, default if default else node)
        return node

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def section(self, name: str) -> SectionProxy:
        """Return a section, empty when the key is missing from the file."""
        value = self._data.get(name)
        return SectionProxy(value if isinstance(value, dict) else {})

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        if isinstance(value, dict):
            return SectionProxy(value)
        return value


config = Config()

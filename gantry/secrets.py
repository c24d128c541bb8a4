"""Scoped secrets capability handed to the executor at construction."""

import logging
import os
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from gantry.config import Config
from gantry.config_loader import ConfigLoader

logger = logging.getLogger(__name__)

MASK = "****"


class Secrets:
    """Named secret values a run may bind into stage environments.

    Stages never see secrets they did not ask for through `credentials`,
    and bound values are masked in captured output.
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})

    @classmethod
    def from_env(cls, prefix: str = Config.SECRET_ENV_PREFIX, environ: Optional[Mapping[str, str]] = None) -> "Secrets":
        """Collect `<prefix>NAME=value` variables as secret `name`."""
        environ = os.environ if environ is None else environ
        values = {
            key[len(prefix):].lower(): value
            for key, value in environ.items()
            if key.startswith(prefix) and len(key) > len(prefix)
        }
        return cls(values)

    @classmethod
    def from_file(cls, path: Path) -> "Secrets":
        """Load a flat YAML mapping of secret name to value."""
        raw = ConfigLoader.load_yaml(Path(path))
        values = {}
        for name, value in raw.items():
            if isinstance(value, (dict, list)):
                raise ValueError(f"Secret '{name}' in {path} must be a scalar")
            values[str(name)] = "" if value is None else str(value)
        logger.info(f"Loaded {len(values)} secret(s) from {path}")
        return cls(values)

    def merged(self, other: "Secrets") -> "Secrets":
        return Secrets({**self._values, **other._values})

    def names(self):
        return sorted(self._values)

    def has(self, name: str) -> bool:
        return name in self._values

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def bind(self, credentials: Mapping[str, str]) -> Dict[str, str]:
        """
        Resolve a stage's credential bindings.

        Args:
            credentials: Env var name -> secret name

        Returns:
            Env var name -> secret value

        Raises:
            KeyError: If a referenced secret is not available
        """
        bound = {}
        for env_name, secret_name in credentials.items():
            if secret_name not in self._values:
                raise KeyError(secret_name)
            bound[env_name] = self._values[secret_name]
        return bound

    def mask(self, text: str, names: Optional[Iterable[str]] = None) -> str:
        """Replace secret values in `text` (all secrets, or only `names`)."""
        selected = self._values if names is None else {n: self._values[n] for n in names if n in self._values}
        # Longest first so a secret containing another is fully masked
        for value in sorted(selected.values(), key=len, reverse=True):
            if value:
                text = text.replace(value, MASK)
        return text

    def __repr__(self) -> str:
        return f"Secrets(names={self.names()})"

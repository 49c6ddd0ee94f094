"""Configuration management for pack-taxonomy.

This module centralises finding and loading the JSON files a run needs:
``config.json`` (thresholds, AI endpoint, tuning overrides),
``taxonomy.json`` (families, keywords, exclusions, style synonyms) and
the pack record files handed in by the discovery stage.  Every document
is validated with ``jsonschema`` against the schemas shipped in
``pack_taxonomy/schemas``.

Configuration lives in the platform AppData directory
(``%APPDATA%/PackTaxonomy`` on Windows, ``$XDG_CONFIG_HOME/PackTaxonomy``
or ``~/.config/PackTaxonomy`` elsewhere) unless portable mode is active.
Portable mode is selected by a ``portable.flag`` file in the application
directory or by passing ``--portable`` to the CLI; the flag file takes
precedence.

Invalid configuration or taxonomy files never stop a run: a warning is
logged and the defaults (or the built-in taxonomy) are used instead.
Invalid pack input raises :class:`~pack_taxonomy.errors.ConfigError`.

Example usage::

    from pack_taxonomy.config_service import ConfigService

    service = ConfigService(app_dir=Path.cwd())
    run_config = RunConfig.from_dict(service.load_config())
    index = service.load_taxonomy()
    packs = service.load_packs(Path("packs.json"))

"""

from __future__ import annotations

import json
import logging
import os
import platform
from dataclasses import dataclass, field
from json import JSONDecodeError
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema

from . import tuning
from .classifier import CascadeConfig
from .clustering import ClusterConfig
from .errors import ConfigError, TaxonomyLoadError
from .fusion import FusionConfig
from .matrix import MatrixConfig
from .models import Pack
from .taxonomy import TaxonomyIndex, build_index, default_index

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"


def _get_appdata_root(app_name: str = "PackTaxonomy") -> Path:
    """Return the platform-specific base directory for config files."""
    system = platform.system().lower()
    if system == "windows":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / app_name
        return Path.home() / f"AppData/Roaming/{app_name}"
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / app_name
    return Path.home() / ".config" / app_name


def _load_json(path: Path) -> Any:
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _save_json(data: Any, file_path: Path) -> None:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8", newline="\n") as f:
        json.dump(data, f, indent=2)


def _validate_json(data: Any, schema_path: Path) -> None:
    """Validate ``data`` against the schema at ``schema_path``."""
    schema = _load_json(schema_path)
    if not schema:
        return
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as exc:
        raise ValueError(f"{schema_path.name}: {exc.message}") from exc


@dataclass
class RunConfig:
    """Settings for one pipeline run, defaulted from :mod:`tuning`."""

    cascade: CascadeConfig = field(default_factory=CascadeConfig)
    clustering: ClusterConfig = field(default_factory=ClusterConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    matrix: MatrixConfig = field(default_factory=MatrixConfig)
    max_proposals: int = field(default_factory=lambda: tuning.MAX_PROPOSALS)
    proposal_weights: Dict[str, float] = field(default_factory=lambda: dict(tuning.PROPOSAL_WEIGHTS))
    ai_batch_size: int = field(default_factory=lambda: tuning.AI_BATCH_SIZE)
    ai_batch_delay_seconds: float = field(default_factory=lambda: tuning.AI_BATCH_DELAY_SECONDS)
    ai_endpoint: Optional[str] = None
    ai_model: str = "gpt-4o-mini"
    ai_api_key_env: str = "PACK_TAXONOMY_AI_KEY"
    taxonomy_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RunConfig":
        data = dict(data or {})
        # Tuning overrides first so every default below sees them
        if isinstance(data.get("tuning"), dict):
            tuning.apply_overrides(data["tuning"])
        cfg = cls()
        cfg.cascade = CascadeConfig.from_dict(
            {k: data[k] for k in ("confidence_threshold", "skip_confidence_threshold",
                                  "min_bundle_inheritance_confidence", "ai_enabled") if k in data}
        )
        clustering = {k: data[k] for k in ("similarity_threshold", "merge_threshold",
                                           "min_cluster_size", "max_cluster_size") if k in data}
        if "clustering_algorithm" in data:
            clustering["algorithm"] = data["clustering_algorithm"]
        cfg.clustering = ClusterConfig.from_dict(clustering)
        cfg.fusion = FusionConfig()
        cfg.matrix = MatrixConfig()
        for key in ("max_proposals", "ai_batch_size", "ai_batch_delay_seconds",
                    "ai_endpoint", "ai_model", "ai_api_key_env", "taxonomy_path"):
            if key in data:
                setattr(cfg, key, data[key])
        if isinstance(data.get("proposal_weights"), dict):
            cfg.proposal_weights.update(data["proposal_weights"])
        return cfg

    @property
    def ai_api_key(self) -> Optional[str]:
        return os.environ.get(self.ai_api_key_env) or None


@dataclass
class ConfigService:
    """Resolve and load pack-taxonomy configuration."""

    app_dir: Path
    portable_flag_filename: str = "portable.flag"
    config_filename: str = "config.json"
    taxonomy_filename: str = "taxonomy.json"
    schema_dir: Path = SCHEMA_DIR
    config_dir_override: Optional[Path] = None
    _cached_mode: Optional[bool] = field(default=None, init=False, repr=False)

    def _portable_flag_exists(self) -> bool:
        return (self.app_dir / self.portable_flag_filename).exists()

    def detect_mode(self, cli_portable: bool = False) -> bool:
        """Return ``True`` if portable mode should be used.

        The ``portable.flag`` file always forces portable mode; otherwise
        ``cli_portable`` decides.  The result is cached.
        """
        if self._cached_mode is None:
            if self._portable_flag_exists():
                self._cached_mode = True
            else:
                self._cached_mode = bool(cli_portable)
        return self._cached_mode

    def get_config_dir(self, cli_portable: bool = False) -> Path:
        if self.config_dir_override is not None:
            return Path(self.config_dir_override)
        if self.detect_mode(cli_portable=cli_portable):
            return self.app_dir
        return _get_appdata_root()

    def get_config_path(self, cli_portable: bool = False) -> Path:
        return self.get_config_dir(cli_portable) / self.config_filename

    def get_taxonomy_path(self, cli_portable: bool = False) -> Path:
        return self.get_config_dir(cli_portable) / self.taxonomy_filename

    def get_schema_path(self, schema_name: str) -> Path:
        return self.schema_dir / schema_name

    def load_config(self, cli_portable: bool = False) -> Dict[str, Any]:
        """Load ``config.json``; invalid files fall back to defaults."""
        cfg_path = self.get_config_path(cli_portable)
        try:
            data = _load_json(cfg_path)
        except (OSError, JSONDecodeError) as exc:
            logger.warning("Could not read %s: %s. Falling back to defaults.", cfg_path, exc)
            return {}
        cfg: Dict[str, Any] = data if data is not None else {}
        try:
            _validate_json(cfg, self.get_schema_path("config.schema.json"))
        except ValueError as exc:
            logger.warning("Invalid configuration (%s). Falling back to defaults.", exc)
            cfg = {}
        return cfg

    def save_config(self, config: Dict[str, Any], cli_portable: bool = False) -> None:
        """Write configuration to disk, validating against the schema first."""
        try:
            _validate_json(config, self.get_schema_path("config.schema.json"))
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        _save_json(config, self.get_config_path(cli_portable))

    def read_taxonomy(self, path: Path) -> TaxonomyIndex:
        """Load and validate a taxonomy file, raising on any problem."""
        try:
            data = _load_json(path)
        except (OSError, JSONDecodeError) as exc:
            raise TaxonomyLoadError(f"Could not read taxonomy {path}: {exc}") from exc
        if data is None:
            raise TaxonomyLoadError(f"Taxonomy file not found: {path}")
        try:
            _validate_json(data, self.get_schema_path("taxonomy.schema.json"))
        except ValueError as exc:
            raise TaxonomyLoadError(f"Invalid taxonomy {path}: {exc}") from exc
        index = TaxonomyIndex.from_dict(data, source=str(path))
        if not index.families:
            raise TaxonomyLoadError(f"Taxonomy {path} defines no families")
        return index

    def load_taxonomy(self, path: Optional[Path] = None, cli_portable: bool = False) -> TaxonomyIndex:
        """Load the taxonomy, falling back to the built-in one on failure.

        Without an explicit ``path`` the taxonomy file in the config
        directory is used when present; otherwise the built-in taxonomy.
        """
        if path is None:
            path = self.get_taxonomy_path(cli_portable)
            if not path.exists():
                return default_index()
        try:
            return self.read_taxonomy(Path(path))
        except TaxonomyLoadError as exc:
            logger.warning("%s. Using the built-in taxonomy.", exc)
            return build_index(None)

    def load_packs(self, path: Path) -> List[Pack]:
        """Read pack records (a JSON list or ``{"packs": [...]}``)."""
        try:
            data = _load_json(Path(path))
        except (OSError, JSONDecodeError) as exc:
            raise ConfigError(f"Could not read pack file {path}: {exc}") from exc
        if data is None:
            raise ConfigError(f"Pack file not found: {path}")
        try:
            _validate_json(data, self.get_schema_path("packs.schema.json"))
        except ValueError as exc:
            raise ConfigError(f"Invalid pack file {path}: {exc}") from exc
        records = data["packs"] if isinstance(data, dict) else data
        return [Pack.from_dict(record) for record in records]

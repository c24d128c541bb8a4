"""Pipeline loader and validator.

Loads pipeline definitions from YAML files, validates them,
and provides access to the preset pipelines shipped with Gantry.
"""

import logging
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import ValidationError

from gantry.config_loader import ConfigLoader
from gantry.errors import DefinitionError
from gantry.pipeline.schema import PipelineDefinition, StageKind

logger = logging.getLogger(__name__)

PRESETS_DIR = Path(__file__).parent.parent / "presets"

# Commands and env values are expanded at run time, where parameters
# and artifacts are visible; only the rest of the document is resolved on load.
RUNTIME_KEYS = frozenset({"commands", "environment", "always", "success", "failure"})


class PipelineLoader:
    """Load and validate pipeline definitions."""

    def __init__(self, presets_dir: Optional[Path] = None):
        """
        Initialize pipeline loader.

        Args:
            presets_dir: Directory holding preset YAML files (defaults to the bundled presets)
        """
        self.presets_dir = presets_dir or PRESETS_DIR
        self._preset_cache: Dict[str, PipelineDefinition] = {}

    def load_from_yaml(self, yaml_path: Path) -> PipelineDefinition:
        """
        Load pipeline from YAML file.

        Args:
            yaml_path: Path to YAML file

        Returns:
            Validated PipelineDefinition

        Raises:
            DefinitionError: If the file is missing, malformed or invalid
        """
        try:
            raw_config = ConfigLoader.load_yaml(Path(yaml_path), skip_keys=RUNTIME_KEYS)
        except FileNotFoundError:
            raise DefinitionError(f"Pipeline file not found: {yaml_path}")
        except (yaml.YAMLError, ValueError) as e:
            raise DefinitionError(f"Malformed pipeline file {yaml_path}: {e}") from e

        return self._validate(raw_config, source=str(yaml_path))

    def load_from_dict(self, config_dict: Dict[str, Any]) -> PipelineDefinition:
        """
        Load pipeline from dictionary.

        Args:
            config_dict: Pipeline definition as dict

        Returns:
            Validated PipelineDefinition

        Raises:
            DefinitionError: If pipeline is invalid
        """
        return self._validate(config_dict, source="<dict>")

    def load_preset(self, preset_name: str) -> PipelineDefinition:
        """
        Load a preset pipeline by name.

        Args:
            preset_name: Name of preset pipeline (e.g., 'website')

        Returns:
            PipelineDefinition

        Raises:
            DefinitionError: If preset doesn't exist or is invalid
        """
        if preset_name in self._preset_cache:
            return self._preset_cache[preset_name]

        preset_path = self.presets_dir / f"{preset_name}.yaml"
        if not preset_path.exists():
            available = ", ".join(self.list_presets()) or "none"
            raise DefinitionError(f"Unknown preset '{preset_name}' (available: {available})")

        pipeline = self.load_from_yaml(preset_path)
        self._preset_cache[preset_name] = pipeline
        return pipeline

    def list_presets(self) -> List[str]:
        """
        List available preset pipelines.

        Returns:
            List of preset names
        """
        if not self.presets_dir.exists():
            return []

        return sorted(yaml_file.stem for yaml_file in self.presets_dir.glob("*.yaml"))

    def validate_pipeline(self, pipeline: PipelineDefinition) -> List[str]:
        """
        Validate pipeline and return list of warnings.

        Args:
            pipeline: Pipeline to validate

        Returns:
            List of warning messages (empty if no issues)
        """
        warnings = []

        for index, group in enumerate(pipeline.groups):
            if group.parallel and len(group.stages) == 1:
                warnings.append(f"Group {index} is parallel but has a single stage")

            if group.parallel and any(stage.kind == StageKind.APPROVAL for stage in group.stages):
                warnings.append(
                    f"Group {index} runs an approval gate in parallel; siblings keep running while it waits"
                )

            for stage in group.stages:
                if stage.best_effort and stage.artifact:
                    warnings.append(
                        f"Stage '{stage.name}' is best-effort but publishes artifact '{stage.artifact}'; "
                        "later stages may run without it"
                    )
                if stage.retries and stage.timeout_seconds is None:
                    warnings.append(f"Stage '{stage.name}' retries without a timeout")

        declared = {p.name for p in pipeline.parameters}
        for name in pipeline.environment:
            if name in declared:
                warnings.append(f"Environment variable '{name}' is shadowed by the parameter of the same name")

        return warnings

    def _validate(self, raw_config: Dict[str, Any], source: str) -> PipelineDefinition:
        try:
            pipeline = PipelineDefinition(**raw_config)
        except ValidationError as e:
            raise DefinitionError(f"Invalid pipeline definition in {source}: {e}") from e
        except TypeError as e:
            raise DefinitionError(f"Invalid pipeline definition in {source}: {e}") from e

        logger.debug(f"Loaded pipeline '{pipeline.name}' v{pipeline.version} from {source}")
        return pipeline

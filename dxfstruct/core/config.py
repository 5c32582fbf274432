"""
Configuration management for dxfstruct.

Loads layer-role mappings and stage thresholds from JSON files.
"""

import json
from pathlib import Path
from typing import Dict, List, Any, Optional
from fnmatch import fnmatch
from loguru import logger

from dxfstruct.core.models import LayerConfig, SemanticLayer


class Config:
    """Configuration manager for layer-role mappings and stage thresholds."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to JSON config file. If None, uses the packaged default.
        """
        if config_path is None:
            config_path = Path(__file__).parent.parent / "data" / "layer_mapping_default.json"

        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from JSON file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            self._config = json.load(f)

        logger.info(f"Loaded config: {self._config.get('name', 'Unknown')}")

    def get_layers_for_role(self, role: SemanticLayer) -> List[str]:
        """
        Get layer patterns for a semantic role.

        Args:
            role: Semantic layer role

        Returns:
            List of layer name patterns
        """
        mapping = self._config.get("layer_mapping", {}).get(role.value, {})
        return mapping.get("patterns", [])

    def get_excluded_layers_for_role(self, role: SemanticLayer) -> List[str]:
        """Get excluded layer patterns for a semantic role."""
        mapping = self._config.get("layer_mapping", {}).get(role.value, {})
        return mapping.get("exclude", [])

    def matches_layer_pattern(self, layer_name: str, role: SemanticLayer) -> bool:
        """
        Check if a layer name matches the patterns for a role.

        Args:
            layer_name: Name of the layer to check
            role: Semantic layer role

        Returns:
            True if layer matches and is not excluded
        """
        for exclude_pattern in self.get_excluded_layers_for_role(role):
            if fnmatch(layer_name.upper(), exclude_pattern.upper()):
                return False

        for pattern in self.get_layers_for_role(role):
            if fnmatch(layer_name.upper(), pattern.upper()):
                return True

        return False

    def build_layer_config(self, layers: List[str]) -> LayerConfig:
        """
        Assign the drawing's layers to semantic roles.

        Args:
            layers: Layer names present in the drawing

        Returns:
            LayerConfig with every role that matched at least one layer
        """
        roles: Dict[SemanticLayer, List[str]] = {}
        for role in SemanticLayer:
            matched = [name for name in layers if self.matches_layer_pattern(name, role)]
            if matched:
                roles[role] = matched

        orientation = {
            name: value for name, value in self.get_layer_orientation().items()
            if name in layers
        }

        logger.debug(
            "Layer roles: " + ", ".join(f"{r.value}={len(v)}" for r, v in roles.items())
        )
        return LayerConfig(roles=roles, orientation=orientation)

    def get_layer_orientation(self) -> Dict[str, str]:
        """Explicit H/V orientation overrides for label layers."""
        return dict(self._config.get("layer_orientation", {}))

    def get_classification_rule(self, section: str, rule_name: str, default: Any = None) -> Any:
        """
        Get a stage threshold.

        Args:
            section: Stage section ('beam_raw', 'viewport_split', etc.)
            rule_name: Name of the rule
            default: Default value if rule not found

        Returns:
            Rule value or default
        """
        rules = self._config.get("classification_rules", {}).get(section, {})
        return rules.get(rule_name, default)

    def get_geometry_default(self, param_name: str, default: Any = None) -> Any:
        """
        Get a geometry default parameter.

        Args:
            param_name: Parameter name
            default: Default value if not found

        Returns:
            Parameter value or default
        """
        return self._config.get("geometry_defaults", {}).get(param_name, default)


# Global default config instance
_default_config: Optional[Config] = None


def get_default_config() -> Config:
    """Get the default global configuration instance."""
    global _default_config
    if _default_config is None:
        _default_config = Config()
    return _default_config


def load_config(config_path: str) -> Config:
    """
    Load configuration from a specific file.

    Args:
        config_path: Path to JSON config file

    Returns:
        Config instance
    """
    return Config(config_path)

"""Workflow configuration for the default approval ladder.

Loads per-flow-type ladder thresholds from a YAML file. Example::

    defaults:
      mgmt_group: mgmt
      exec_group: exec
      exec_threshold: 100000
      small_under: 50000
    flows:
      invoice:
        recurring_exec_threshold: 200000
      leave:
        exec_threshold: ${LEAVE_EXEC_THRESHOLD}
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from functools import lru_cache
from typing import Any, Dict, Optional

import yaml

from docgate.core.config import get_settings


DEFAULT_EXEC_THRESHOLD = 100000
DEFAULT_SMALL_UNDER = 50000

_UNRESOLVED_VAR = re.compile(r"\$\{?([A-Za-z_][A-Za-z0-9_]*)\}?")


@dataclass
class LadderConfig:
    """Thresholds for the built-in management/executive ladder."""

    mgmt_group: str = "mgmt"
    exec_group: str = "exec"
    exec_threshold: float = DEFAULT_EXEC_THRESHOLD
    small_under: float = DEFAULT_SMALL_UNDER
    # Recurring documents below this amount skip the exec step.
    # None means "same as exec_threshold".
    recurring_exec_threshold: Optional[float] = None

    @property
    def effective_recurring_threshold(self) -> float:
        if self.recurring_exec_threshold is None:
            return self.exec_threshold
        return self.recurring_exec_threshold


@dataclass
class WorkflowConfig:
    """Top-level workflow configuration."""

    defaults: LadderConfig = field(default_factory=LadderConfig)
    flows: Dict[str, LadderConfig] = field(default_factory=dict)

    def ladder_for(self, flow_type: str) -> LadderConfig:
        """Get the ladder for a flow type, falling back to the defaults."""
        return self.flows.get(flow_type, self.defaults)


def _to_number(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Workflow setting {name} must be numeric, got {value!r}")


def parse_ladder_config(
    ladder_dict: Dict[str, Any],
    base: Optional[LadderConfig] = None,
) -> LadderConfig:
    """Parse a ladder mapping on top of ``base``.

    Args:
        ladder_dict: Ladder configuration dictionary
        base: Values used for keys absent from ``ladder_dict``

    Returns:
        LadderConfig instance
    """
    ladder = replace(base) if base else LadderConfig()
    if "mgmt_group" in ladder_dict:
        ladder.mgmt_group = str(ladder_dict["mgmt_group"])
    if "exec_group" in ladder_dict:
        ladder.exec_group = str(ladder_dict["exec_group"])
    if "exec_threshold" in ladder_dict:
        ladder.exec_threshold = _to_number(ladder_dict["exec_threshold"], "exec_threshold")
    if "small_under" in ladder_dict:
        ladder.small_under = _to_number(ladder_dict["small_under"], "small_under")
    if ladder_dict.get("recurring_exec_threshold") is not None:
        ladder.recurring_exec_threshold = _to_number(
            ladder_dict["recurring_exec_threshold"], "recurring_exec_threshold"
        )
    return ladder


def parse_workflow_config(config_dict: Dict[str, Any]) -> WorkflowConfig:
    """Parse the full workflow configuration dictionary."""
    defaults = parse_ladder_config(config_dict.get("defaults") or {})
    flows = {
        flow_type: parse_ladder_config(flow_dict or {}, base=defaults)
        for flow_type, flow_dict in (config_dict.get("flows") or {}).items()
    }
    return WorkflowConfig(defaults=defaults, flows=flows)


def load_workflow_config(config_path: Optional[str] = None) -> WorkflowConfig:
    """Load workflow configuration from a YAML file.

    Args:
        config_path: Path to the YAML file; built-in defaults when None

    Returns:
        WorkflowConfig instance

    Raises:
        FileNotFoundError: If the config file doesn't exist
        yaml.YAMLError: If the config file is invalid YAML
        ValueError: If a referenced environment variable is not set
    """
    if not config_path:
        return WorkflowConfig()

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Workflow configuration not found: {config_path}")

    with config_file.open("r") as f:
        config = yaml.safe_load(f)

    if config is None:
        config = {}

    if not isinstance(config, dict):
        raise TypeError(
            f"Workflow configuration root must be a mapping, got {type(config).__name__}"
        )

    return parse_workflow_config(_expand_env_vars(config))


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand environment variables in configuration."""
    if isinstance(obj, dict):
        return {key: _expand_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        expanded = os.path.expandvars(obj)
        missing = _UNRESOLVED_VAR.search(expanded)
        if missing:
            raise ValueError(
                f"Workflow configuration references environment variable "
                f"{missing.group(1)}, which is not set"
            )
        return expanded
    else:
        return obj


@lru_cache
def get_workflow_config() -> WorkflowConfig:
    """Workflow configuration from ``Settings.workflow_config_path``."""
    return load_workflow_config(get_settings().workflow_config_path)

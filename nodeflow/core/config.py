"""Execution options and workflow file loading.

Options can be passed in code or loaded from YAML:

    mode: parallel
    maxConcurrency: 4
    timeout: 120
    retryPolicy:
      maxRetries: 2
      retryDelay: 0.5
      backoffMultiplier: 2
"""

from __future__ import annotations

import json
import random
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from nodeflow.core.graph_schema import ExecutionMode, WorkflowGraph


class ConfigError(Exception):
    """Configuration or workflow file could not be loaded."""

    pass


class RetryPolicy(BaseModel):
    """Configuration for retry behavior."""

    model_config = ConfigDict(populate_by_name=True)

    max_retries: int = Field(default=3, ge=0, alias="maxRetries")
    retry_delay: float = Field(default=1.0, ge=0, alias="retryDelay")  # seconds
    backoff_multiplier: float = Field(default=2.0, ge=1.0, alias="backoffMultiplier")
    max_delay: float = Field(default=60.0, ge=0, alias="maxDelay")
    jitter: float = Field(default=0.0, ge=0, le=1.0)

    def get_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (1 = first retry)."""
        delay = min(
            self.retry_delay * (self.backoff_multiplier**retry_count),
            self.max_delay,
        )
        if self.jitter:
            delay += random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay)


class ExecutionOptions(BaseModel):
    """How a workflow run is scheduled."""

    model_config = ConfigDict(populate_by_name=True)

    mode: ExecutionMode | None = None  # None = pick from graph shape
    max_concurrency: int = Field(default=5, alias="maxConcurrency")
    timeout: float | None = 300.0  # Overall workflow deadline in seconds
    node_timeout: float | None = Field(default=None, alias="nodeTimeout")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy, alias="retryPolicy")
    max_history: int = Field(default=100, ge=0, alias="maxHistory")

    @field_validator("max_concurrency")
    @classmethod
    def clamp_concurrency(cls, v):
        return max(1, v)

    @field_validator("timeout", "node_timeout")
    @classmethod
    def positive_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError("timeouts must be positive (use null for no timeout)")
        return v


def _read_structured(path: Path) -> Any:
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read '{path}': {e}") from e
    try:
        if path.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Error parsing '{path}': {e}") from e


def load_execution_options(path: str | Path) -> ExecutionOptions:
    """Load ``ExecutionOptions`` from a YAML (or JSON) file.

    Raises:
        ConfigError: unreadable or malformed file
        pydantic.ValidationError: values fail validation
    """
    data = _read_structured(Path(path))
    if data is None:
        return ExecutionOptions()
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid options in '{path}'. Expected a mapping, got {type(data).__name__}."
        )
    return ExecutionOptions.model_validate(data)


def load_workflow(path: str | Path) -> WorkflowGraph:
    """Load a workflow graph from ``.yaml``, ``.yml`` or ``.json``.

    Raises:
        ConfigError: unreadable or malformed file
        pydantic.ValidationError: graph fails schema validation
    """
    path = Path(path)
    data = _read_structured(path)
    if not isinstance(data, dict):
        raise ConfigError(
            f"Invalid workflow content in '{path}'. "
            f"Expected a dictionary, got {type(data).__name__}."
        )
    data.setdefault("id", path.stem)
    return WorkflowGraph.model_validate(data)

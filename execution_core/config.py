"""
Configuration Loading and Validation
====================================

YAML configuration for the execution core.

Features:
- Schema-based type and range validation
- ${env:VAR} secret references for venue credentials
- Plaintext secret warnings
- Clear error messages
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import yaml

logger = logging.getLogger(__name__)


class ConfigValidationError(ValueError):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, result: "ValidationResult"):
        super().__init__(message)
        self.result = result


# =============================================================================
# Secret references
# =============================================================================

ENV_PATTERN = re.compile(r"^\$\{env:([A-Z_][A-Z0-9_]*)\}$")

SECRET_KEYS = ("api_key", "secret", "password", "uid")


def resolve_env_reference(value: str) -> str:
    """
    Resolve a ${env:VAR} reference. Other strings are returned unchanged.

    Raises:
        ValueError: If the referenced variable is not set
    """
    match = ENV_PATTERN.match(value)
    if not match:
        return value
    name = match.group(1)
    resolved = os.environ.get(name)
    if resolved is None:
        raise ValueError(f"Environment variable '{name}' not set")
    return resolved


def resolve_secrets(config: Any) -> Any:
    """Recursively resolve ${env:VAR} references in a config structure."""
    if isinstance(config, dict):
        return {key: resolve_secrets(value) for key, value in config.items()}
    if isinstance(config, list):
        return [resolve_secrets(item) for item in config]
    if isinstance(config, str):
        return resolve_env_reference(config)
    return config


def check_plaintext_secrets(config: dict) -> list[str]:
    """Paths of venue credentials stored as plain text."""
    paths = []
    for venue_name, venue_config in (config.get("venues") or {}).items():
        if not isinstance(venue_config, dict):
            continue
        for key in SECRET_KEYS:
            value = venue_config.get(key)
            if isinstance(value, str) and value and not ENV_PATTERN.match(value):
                paths.append(f"venues.{venue_name}.{key}")
    return paths


# =============================================================================
# Validation
# =============================================================================

class ValidationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ValidationIssue:
    severity: ValidationSeverity
    path: str
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.value.upper()}] {self.path}: {self.message}"


@dataclass
class ValidationResult:
    """Complete validation result."""
    valid: bool = True
    issues: list[ValidationIssue] = field(default_factory=list)

    def add_error(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.ERROR, path, message))
        self.valid = False

    def add_warning(self, path: str, message: str) -> None:
        self.issues.append(ValidationIssue(ValidationSeverity.WARNING, path, message))

    def get_errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]

    def summary(self) -> str:
        status = "VALID" if self.valid else "INVALID"
        return (
            f"Config validation: {status} "
            f"({len(self.get_errors())} errors, {len(self.get_warnings())} warnings)"
        )


@dataclass
class FieldSchema:
    """Schema for a single optional config field."""
    path: str
    field_type: type | tuple[type, ...]
    min_value: float | None = None
    max_value: float | None = None
    allowed_values: list | None = None
    validator: Callable[[Any], bool] | None = None


NUMBER = (int, float)

DEFAULT_SCHEMAS = [
    FieldSchema("gateway.max_attempts", int, min_value=1, max_value=10),
    FieldSchema("gateway.backoff_seconds", NUMBER, min_value=0),
    FieldSchema("slippage.max_slippage", NUMBER, min_value=0, max_value=100),
    FieldSchema("slippage.max_market_impact", NUMBER, min_value=0, max_value=100),
    FieldSchema("slippage.liquidity_threshold", NUMBER, min_value=0),
    FieldSchema("slippage.monitor_interval_seconds", NUMBER, min_value=0.01),
    FieldSchema("slippage.protection_ttl_seconds", NUMBER, min_value=1),
    FieldSchema("tca.smoothing_factor", NUMBER, min_value=0, max_value=1),
    FieldSchema("tca.min_samples", int, min_value=1),
    FieldSchema("tca.history_size", int, min_value=1),
    FieldSchema("rl.learning_rate", NUMBER, min_value=0, max_value=1),
    FieldSchema("rl.discount_factor", NUMBER, min_value=0, max_value=1),
    FieldSchema("rl.epsilon", NUMBER, min_value=0, max_value=1),
    FieldSchema("rl.epsilon_min", NUMBER, min_value=0, max_value=1),
    FieldSchema("rl.epsilon_decay", NUMBER, min_value=0, max_value=1),
    FieldSchema("rl.next_q_mode", str, allowed_values=["observed", "available"]),
    FieldSchema("atomic.max_execution_time_seconds", NUMBER, min_value=0.1),
    FieldSchema("atomic.rollback_timeout_seconds", NUMBER, min_value=0.1),
    FieldSchema("atomic.min_validation_score", NUMBER, min_value=0, max_value=1),
    FieldSchema("atomic.failure_rate_threshold", NUMBER, min_value=0, max_value=1),
    FieldSchema("orchestrator.tca_confidence_threshold", NUMBER, min_value=0, max_value=1),
    FieldSchema("orchestrator.fee_rate", NUMBER, min_value=0, max_value=0.1),
    FieldSchema("logging.level", str, allowed_values=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
]


class ConfigValidator:
    """Validates an execution core config dict against field schemas."""

    def __init__(self, schemas: list[FieldSchema] | None = None):
        self._schemas = list(schemas) if schemas is not None else list(DEFAULT_SCHEMAS)

    def add_schema(self, schema: FieldSchema) -> None:
        self._schemas.append(schema)

    def validate(self, config: dict, strict: bool = False) -> ValidationResult:
        """
        Validate configuration against schemas.

        Raises:
            ConfigValidationError: If strict and validation fails
        """
        result = ValidationResult()
        if not isinstance(config, dict):
            result.add_error("<root>", f"Config must be a mapping, got {type(config).__name__}")
        else:
            for schema in self._schemas:
                self._validate_field(config, schema, result)
            self._validate_cross_fields(config, result)
            for path in check_plaintext_secrets(config):
                result.add_warning(path, "Secret stored as plaintext, use ${env:VAR_NAME}")

        if result.valid:
            logger.info(result.summary())
        else:
            logger.error(result.summary())
            for issue in result.get_errors():
                logger.error(str(issue))
        for issue in result.get_warnings():
            logger.warning(str(issue))

        if strict and not result.valid:
            raise ConfigValidationError(
                result.summary() + "\n" + "\n".join(str(i) for i in result.get_errors()),
                result,
            )
        return result

    def _validate_field(self, config: dict, schema: FieldSchema, result: ValidationResult) -> None:
        value = _get_nested_value(config, schema.path)
        if value is None:
            return

        if isinstance(value, bool) or not isinstance(value, schema.field_type):
            expected = (
                schema.field_type.__name__ if isinstance(schema.field_type, type)
                else "/".join(t.__name__ for t in schema.field_type)
            )
            result.add_error(schema.path, f"Invalid type: expected {expected}, got {type(value).__name__}")
            return

        if schema.min_value is not None and value < schema.min_value:
            result.add_error(schema.path, f"Value {value} is below minimum {schema.min_value}")
        if schema.max_value is not None and value > schema.max_value:
            result.add_error(schema.path, f"Value {value} is above maximum {schema.max_value}")
        if schema.allowed_values is not None and value not in schema.allowed_values:
            result.add_error(schema.path, f"Value '{value}' not in allowed values: {schema.allowed_values}")
        if schema.validator is not None and not schema.validator(value):
            result.add_error(schema.path, "Failed custom validation")

    def _validate_cross_fields(self, config: dict, result: ValidationResult) -> None:
        epsilon = _get_nested_value(config, "rl.epsilon")
        epsilon_min = _get_nested_value(config, "rl.epsilon_min")
        if isinstance(epsilon, NUMBER) and isinstance(epsilon_min, NUMBER) and epsilon_min > epsilon:
            result.add_error("rl.epsilon_min", f"epsilon_min {epsilon_min} exceeds epsilon {epsilon}")

        venues = config.get("venues")
        if venues is not None and not isinstance(venues, dict):
            result.add_error("venues", "Must be a mapping of venue name to settings")
        elif not venues:
            result.add_warning("venues", "No venues configured, a paper venue will be used")


def _get_nested_value(config: dict, path: str) -> Any:
    value: Any = config
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
        if value is None:
            return None
    return value


def load_config(path: str | Path, strict: bool = True) -> dict[str, Any]:
    """
    Load, validate and resolve a YAML config file.

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigValidationError: If strict and validation fails
    """
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    ConfigValidator().validate(config, strict=strict)
    logger.info(f"Loaded execution config from {path}")
    return resolve_secrets(config)

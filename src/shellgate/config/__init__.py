"""
shellgate config package public API.

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``shellgate.toml`` + ``SHELLGATE_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from shellgate.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    EnvBinding,
    dump_effective_config,
    effective_config,
    env_bindings,
    env_overrides,
    load_config,
    normalize_paths,
)
from shellgate.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    ShellgateConfig,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EnvBinding",
    "PATH_FIELDS",
    "ShellgateConfig",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "env_bindings",
    "env_overrides",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]

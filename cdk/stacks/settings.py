import os
import re
from pathlib import Path
from typing import Dict, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, field_validator

CDK_DIR = Path(__file__).resolve().parent.parent
DEFAULT_ENV_FILE = CDK_DIR / ".env"
DEFAULT_MANIFEST_PATH = "../Cargo.toml"

ARCHITECTURES = ("x86_64", "arm64")
PARAMETER_NAME_PATTERN = r"^/.+"
PARAMETER_VERSION_PATTERN = r"^[0-9]+$"

_PREFIX_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")
_TRUTHY = {"1", "true", "yes", "on"}


class UnresolvedParameterError(ValueError):
    """A deploy parameter was required at synth time but no value was given."""

    def __init__(self, parameter: str, variable: str):
        self.parameter = parameter
        self.variable = variable
        super().__init__(
            f"Unresolved parameter {parameter}: set {variable} in .env "
            "or unset REQUIRE_CONFIG_PARAMETERS"
        )


class StackSettings(BaseModel):
    """Synth-time settings for the webhook pipeline stack"""

    model_config = ConfigDict(frozen=True)

    prefix: str
    manifest_path: Path
    architecture: str = "x86_64"
    config_parameter_name: Optional[str] = None
    config_parameter_version: Optional[str] = None

    @field_validator("prefix")
    @classmethod
    def _valid_prefix(cls, value: str) -> str:
        # CloudFormation stack names: letters, digits and hyphens
        if not _PREFIX_PATTERN.match(value):
            raise ValueError(
                "PREFIX must start with a letter and contain only letters, digits and '-'"
            )
        return value

    @field_validator("manifest_path")
    @classmethod
    def _manifest_exists(cls, value: Path) -> Path:
        if not value.is_file():
            raise ValueError(f"Cargo manifest not found at {value}")
        return value

    @field_validator("architecture")
    @classmethod
    def _known_architecture(cls, value: str) -> str:
        if value not in ARCHITECTURES:
            raise ValueError(f"LAMBDA_ARCHITECTURE must be one of {ARCHITECTURES}")
        return value

    @field_validator("config_parameter_name")
    @classmethod
    def _qualified_name(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not re.match(PARAMETER_NAME_PATTERN, value):
            raise ValueError("CONFIG_PARAMETER_NAME must be a fully qualified name starting with '/'")
        return value

    @field_validator("config_parameter_version")
    @classmethod
    def _numeric_version(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not re.match(PARAMETER_VERSION_PATTERN, value):
            raise ValueError("CONFIG_PARAMETER_VERSION must be a numeric version")
        return value

    @property
    def stack_name(self) -> str:
        return f"{self.prefix}-WebhookPipeline"


def load_settings(env_file: Optional[Path] = None) -> StackSettings:
    """
    Build StackSettings from the .env file and the process environment.

    Process environment variables take precedence over the .env file.
    CARGO_MANIFEST_PATH is resolved relative to the cdk/ directory.

    Raises:
        ValueError: If PREFIX is missing
        UnresolvedParameterError: If REQUIRE_CONFIG_PARAMETERS is set and a
            config parameter value is missing
        pydantic.ValidationError: If a value is malformed
    """
    values: Dict[str, Optional[str]] = {
        **dotenv_values(env_file or DEFAULT_ENV_FILE),
        **os.environ,
    }

    prefix = values.get("PREFIX")
    if not prefix:
        raise ValueError("PREFIX must be set in .env file")

    manifest_path = Path(values.get("CARGO_MANIFEST_PATH") or DEFAULT_MANIFEST_PATH)
    if not manifest_path.is_absolute():
        manifest_path = (CDK_DIR / manifest_path).resolve()

    parameter_name = values.get("CONFIG_PARAMETER_NAME") or None
    parameter_version = values.get("CONFIG_PARAMETER_VERSION") or None

    if (values.get("REQUIRE_CONFIG_PARAMETERS") or "").strip().lower() in _TRUTHY:
        if parameter_name is None:
            raise UnresolvedParameterError("ConfigParameterName", "CONFIG_PARAMETER_NAME")
        if parameter_version is None:
            raise UnresolvedParameterError("ConfigParameterVersion", "CONFIG_PARAMETER_VERSION")

    return StackSettings(
        prefix=prefix,
        manifest_path=manifest_path,
        architecture=values.get("LAMBDA_ARCHITECTURE") or "x86_64",
        config_parameter_name=parameter_name,
        config_parameter_version=parameter_version,
    )

import os
import sys

import pytest

# Add cdk/ to path so `stacks` imports the same way app.py does
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "cdk"))

SETTINGS_VARIABLES = [
    "PREFIX",
    "CARGO_MANIFEST_PATH",
    "LAMBDA_ARCHITECTURE",
    "CONFIG_PARAMETER_NAME",
    "CONFIG_PARAMETER_VERSION",
    "REQUIRE_CONFIG_PARAMETERS",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's shell settings out of the tests"""
    for name in SETTINGS_VARIABLES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cargo_manifest(tmp_path):
    """Stand-in Cargo project; bundling is skipped so it is never built"""
    manifest = tmp_path / "Cargo.toml"
    manifest.write_text(
        '[package]\nname = "webhook-handlers"\nversion = "0.1.0"\nedition = "2021"\n'
    )
    return manifest

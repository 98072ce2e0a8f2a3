"""Tests for the integration manifest."""

import json
from pathlib import Path

MANIFEST = (
    Path(__file__).parent.parent / "custom_components" / "stellantis_remote" / "manifest.json"
)


def test_manifest_declares_config_flow():
    manifest = json.loads(MANIFEST.read_text())

    assert manifest["domain"] == "stellantis_remote"
    assert manifest["config_flow"] is True
    assert manifest["requirements"]

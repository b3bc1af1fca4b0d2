"""
Pytest configuration and fixtures for kube-deploy tests.
"""

import pytest

from kubedeploy.utils.commands import reset_kubectl_command_cache


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    """Keep audit entries out of the real home directory."""
    path = tmp_path / "audit" / "audit.jsonl"
    monkeypatch.setenv("KUBEDEPLOY_AUDIT_LOG", str(path))
    return path


@pytest.fixture(autouse=True)
def clean_kubectl_cache():
    """Each test resolves kubectl afresh."""
    reset_kubectl_command_cache()
    yield
    reset_kubectl_command_cache()


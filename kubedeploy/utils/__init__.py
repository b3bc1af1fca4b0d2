"""Utilities for kube-deploy."""

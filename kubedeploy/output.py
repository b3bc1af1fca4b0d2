"""
Output formatting for kube-deploy listings.

Supports table, JSON and YAML so `kube-deploy list` can be read by people
and by scripts.
"""

import json
from typing import Any, Dict, List, Optional

import yaml
from tabulate import tabulate  # type: ignore[import-untyped]

from kubedeploy.models import Release

RELEASE_COLUMNS = ["name", "replicas", "status", "created"]
RELEASE_HEADERS = ["Active Deployments", "Replicas", "Status", "Date Created"]


def release_row(release: Release) -> Dict[str, Any]:
    """Flatten a release into the fields shown by `list`."""
    return {
        "name": release.name,
        "replicas": release.replicas,
        "status": release.status.value,
        "created": release.created_at.isoformat() if release.created_at else None,
    }


class OutputFormatter:
    """Formats rows as a table, JSON or YAML."""

    def format_table(
        self,
        data: List[Dict[str, Any]],
        columns: List[str],
        headers: Optional[List[str]] = None,
    ) -> str:
        if not data:
            return "No deployments found."

        table_data = []
        for item in data:
            row = []
            for col in columns:
                value = item.get(col)
                if value is None:
                    row.append("")
                elif isinstance(value, (dict, list)):
                    row.append(json.dumps(value))
                else:
                    row.append(str(value))
            table_data.append(row)

        result: str = tabulate(table_data, headers=headers or columns, tablefmt="simple")
        return result

    def format_json(self, data: Any) -> str:
        return json.dumps(data, indent=2, default=str)

    def format_yaml(self, data: Any) -> str:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def format_releases(self, releases: List[Release], format: str = "table") -> str:
        """
        Format a release set.

        Raises:
            ValueError: If format is not recognized
        """
        rows = [release_row(r) for r in releases]
        format = format.lower()
        if format == "json":
            return self.format_json(rows)
        elif format == "yaml":
            return self.format_yaml(rows)
        elif format == "table":
            return self.format_table(rows, RELEASE_COLUMNS, RELEASE_HEADERS)
        else:
            raise ValueError(f"Unknown format: {format}. Use 'table', 'json', or 'yaml'.")


formatter = OutputFormatter()

"""
Manifest template rendering.

Every file in the repository's kubernetes directory is run through
consul-template with the resolved template variables exported, and the
result is written under .kubedeploy-temp/ for kubectl to apply.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from kubedeploy.config.settings import DeployContext
from kubedeploy.protocols import TemplateError
from kubedeploy.utils.commands import get_command_output_and_exit_code

logger = logging.getLogger(__name__)

CONSUL_TEMPLATE = "consul-template"


class ManifestRenderer:
    """Renders and cleans up the manifests for one DeployContext."""

    def __init__(self, ctx: DeployContext, environ: Optional[Mapping[str, str]] = None):
        self.ctx = ctx
        self.environ = os.environ if environ is None else environ

    @property
    def source_dir(self) -> Path:
        source = Path(self.ctx.config.application.path_to_kubernetes_files)
        if not source.is_absolute():
            source = Path(self.ctx.resolved.pwd) / source
        return source

    @property
    def workdir(self) -> Path:
        return self.ctx.resolved.template_workdir

    def _command(self, template_path: Path) -> List[str]:
        cmd = [CONSUL_TEMPLATE]
        vault_addr = self.environ.get("VAULT_ADDR")
        if vault_addr:
            cmd += ["--vault-renew-token=false", "--vault-retry=false", "--vault-addr", vault_addr]
        cmd += ["-template", str(template_path), "-once", "-dry"]
        return cmd

    def _environment(self) -> Dict[str, str]:
        env = dict(self.environ)
        if env.get("VAULT_ADDR"):
            env["SECRETS_LOCATION"] = self.ctx.resolved.namespace
        env.update(self.ctx.resolved.env_mapping)
        return env

    def render_file(self, template_path: Path) -> str:
        """
        Render one template.

        consul-template's dry run prints a header line naming the
        destination before the content; that line is dropped.

        Raises:
            TemplateError: If consul-template fails
        """
        output, exit_code = get_command_output_and_exit_code(
            self._command(template_path), env=self._environment()
        )
        if exit_code != 0:
            raise TemplateError(
                f"=> Oh no, looks like consul-template failed on {template_path.name} "
                f"(exit code {exit_code})!"
            )
        return "\n".join(output.split("\n")[1:])

    def render(self) -> List[Path]:
        """
        Render every template.

        Returns:
            Paths of the rendered files, in file name order

        Raises:
            TemplateError: If the template directory is unreadable or a render fails
        """
        source = self.source_dir
        if not source.is_dir():
            raise TemplateError(f"=> Unable to get list of kubernetes files in {source}.")

        if self.ctx.options.debug:
            for key, value in sorted(self.ctx.resolved.env_mapping.items()):
                logger.debug(f"{key}={value}")

        self.workdir.mkdir(parents=True, exist_ok=True)
        rendered: List[Path] = []
        for template_path in sorted(p for p in source.iterdir() if p.is_file()):
            logger.info(f"=> Generating YAML from template for {template_path.name}")
            content = self.render_file(template_path)
            target = self.workdir / template_path.name
            try:
                target.write_text(content)
            except OSError as e:
                raise TemplateError(f"Could not write rendered manifest {target}: {e}")
            rendered.append(target)
        return rendered

    def cleanup(self) -> None:
        """Remove rendered files unless asked to keep them."""
        if self.ctx.options.keep_template_files:
            logger.info("=> Leaving the templated files, like you asked.")
            return
        shutil.rmtree(self.workdir, ignore_errors=True)

"""
Docker build pipeline.

Builds the application image, runs the repository's configured test sets
against it and pushes it, refusing to do so from a dirty working tree when
the target is the production cluster.
"""

import json
import logging
import shlex
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import docker
from docker.errors import APIError, BuildError as DockerBuildError, ContainerError, DockerException, NotFound

from kubedeploy.config.settings import BuildTestSet, DeployContext
from kubedeploy.hold import console_confirm
from kubedeploy.protocols import BuildError, ConfigError, Confirm, PushDeclinedError
from kubedeploy.utils.commands import (
    get_command_output,
    get_command_output_and_exit_code,
    stream_command_exit_code,
)

logger = logging.getLogger(__name__)

TEST_COMMAND_IMAGE = "mycujoo/gcloud-docker"
DOCKER_HUB_AUTH_KEY = "index.docker.io/v1/"
DEFAULT_DOCKER_CONFIG = Path.home() / ".docker" / "config.json"

HOST_ONLY = "host-only"
ON_HOST = "on-host"
IN_TEST_CONTAINER = "in-test-container"
IN_EXTERNAL_CONTAINER = "in-external-container"


def logged_in_registries(docker_config_path: Union[str, Path]) -> List[str]:
    """
    List registries docker has credentials for.

    Raises:
        ConfigError: If the docker config file is missing or malformed
    """
    path = Path(docker_config_path)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(
            f"There was a problem reading your docker config file {path}, "
            f"so I don't know if you're logged in: {e}"
        )
    except json.JSONDecodeError as e:
        raise ConfigError(f"Your docker config file {path} is not valid JSON: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Your docker config file {path} is not a JSON object")

    registries: List[str] = []
    for section in ("auths", "credHelpers"):
        entries = data.get(section) or {}
        if not isinstance(entries, dict):
            raise ConfigError(f"'{section}' in your docker config file {path} is not an object")
        registries.extend(entries.keys())
    return registries


class BuildPipeline:
    """Builds, tests and pushes the image for a DeployContext."""

    def __init__(
        self,
        docker_client: Optional[Any] = None,
        confirm: Confirm = console_confirm,
        docker_config_path: Union[str, Path] = DEFAULT_DOCKER_CONFIG,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the pipeline.

        Args:
            docker_client: docker SDK client (created from the environment when omitted)
            confirm: Asks whether to push after the tests pass
            docker_config_path: docker CLI config holding registry credentials
            sleep: Pause used while test containers come up
        """
        self._client = docker_client
        self.confirm = confirm
        self.docker_config_path = docker_config_path
        self.sleep = sleep

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise BuildError(f"Unable to connect to the docker daemon: {e}")
        return self._client

    def image_exists_remotely(self, image_ref: str) -> bool:
        """Check whether the registry has the image, by pulling it."""
        logger.debug(f"Pulling {image_ref} to see whether it exists remotely")
        try:
            self.client.images.pull(image_ref)
        except (NotFound, APIError) as e:
            logger.debug(f"Pull of {image_ref} failed: {e}")
            return False
        return True

    def is_logged_in(self, registry_root: str) -> bool:
        """Check that docker holds credentials for the configured registry."""
        wanted = registry_root or DOCKER_HUB_AUTH_KEY
        registries = logged_in_registries(self.docker_config_path)
        if any(r in (wanted, f"https://{wanted}") for r in registries):
            return True

        logger.error("=> Found following authenticated docker remotes:")
        for registry in registries:
            logger.error(f"      {registry}")
        logger.error(f"=> We are looking for: {wanted}")
        return False

    def working_directory_is_clean(self, pwd: str) -> bool:
        try:
            status = get_command_output(["git", "status", "-s"], cwd=pwd)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise BuildError(f"Unable to check the git working tree: {e}")
        return status.strip() == ""

    def build_test_push(self, ctx: DeployContext) -> None:
        """
        Build, test and push the image described by the context.

        Raises:
            BuildError: If any step fails
            PushDeclinedError: If the operator chose not to push
        """
        self.build_and_test(ctx)
        if ctx.options.force_push_image:
            self.push(ctx)
            return

        if not self.confirm(
            "=> Yay, all the tests passed! Would you like to push this to the remote now?"
        ):
            raise PushDeclinedError("=> Thanks for building! The image was not pushed.")
        self.push(ctx)

    def build_and_test(self, ctx: DeployContext) -> None:
        resolved = ctx.resolved
        registry_root = ctx.config.docker_repository.registry_root
        if not self.is_logged_in(registry_root):
            raise BuildError(
                "=> Uh oh, you're not logged into the configured docker remote for this repo. "
                "You won't be able to push!"
            )

        if resolved.cluster_name == "production" and not self.working_directory_is_clean(
            resolved.pwd
        ):
            if not ctx.options.override_dirty_workdir:
                raise BuildError(
                    "=> Oh no! You have uncommitted changes in the working tree. "
                    "Please commit or stash before deploying to production.\n"
                    "=> If you're really, really sure, you can override this with "
                    "the '--override-dirty-workdir' flag."
                )
            logger.warning(
                "=> Respecting your wishes to override the dirty working directory and build anyway."
            )

        self.build_image(ctx)
        self.run_tests(ctx)

    def build_image(self, ctx: DeployContext) -> None:
        resolved = ctx.resolved
        logger.info("=> Okay, let's start the build process!")
        logger.info(f"=> First, let's build the image with tag: {resolved.image_full_path}")

        build_args: Optional[Dict[str, str]] = None
        if ctx.config.application.expose_build_args:
            logger.info("=> Exposing ALL branch variables as build arguments")
            build_args = dict(resolved.env_mapping)

        # Warm the layer cache; a missing cache image is fine
        self.image_exists_remotely(resolved.image_cache_path)

        try:
            image, build_log = self.client.images.build(
                path=resolved.pwd,
                tag=resolved.image_full_path,
                cache_from=[resolved.image_cache_path],
                buildargs=build_args,
                rm=True,
            )
        except DockerBuildError as e:
            for chunk in e.build_log or []:
                if isinstance(chunk, dict) and chunk.get("stream"):
                    logger.info(chunk["stream"].rstrip())
            raise BuildError(f"Docker build failed: {e.msg}")
        except APIError as e:
            raise BuildError(f"Docker build failed: {e}")

        for chunk in build_log:
            if isinstance(chunk, dict) and chunk.get("stream"):
                logger.debug(chunk["stream"].rstrip())

        cache_repository, cache_tag = resolved.image_cache_path.rsplit(":", 1)
        image.tag(cache_repository, tag=cache_tag)
        logger.info(f"=> Built {resolved.image_full_path} (also tagged {resolved.image_cache_path})")

    def run_tests(self, ctx: DeployContext) -> None:
        """Run every configured test set; the first failing command aborts the build."""
        for test_set in ctx.config.tests:
            self.run_test_set(ctx, test_set)

    def run_test_set(self, ctx: DeployContext, test_set: BuildTestSet) -> None:
        resolved = ctx.resolved
        logger.info(f"=> Setting up test set: {test_set.name}")

        container_id = ""
        if test_set.type != HOST_ONLY:
            container_id = self._start_test_container(resolved.image_full_path, test_set)

        try:
            self.sleep(2)
            for command in test_set.commands:
                self.sleep(2)
                logger.info(f"=> Executing test command: {command}")
                exit_code = self._run_test_command(resolved.pwd, test_set.type, container_id, command)
                if exit_code != 0:
                    raise BuildError(
                        f"Test command failed with exit code {exit_code} in test set "
                        f"{test_set.name}: {command}"
                    )
        finally:
            self._teardown_test_container(container_id, ctx.options.keep_test_container)

    def _start_test_container(self, image: str, test_set: BuildTestSet) -> str:
        logger.info(f"=> Starting docker image: {image}")
        cmd = ["docker", "run", "--detach"]
        cmd += shlex.split(test_set.docker_args)
        cmd.append(image)
        cmd += shlex.split(test_set.docker_command)

        output, exit_code = get_command_output_and_exit_code(cmd)
        lines = output.strip().splitlines()
        container_id = lines[-1].strip() if lines else ""
        if exit_code != 0:
            self._teardown_test_container(container_id, keep=False)
            raise BuildError(f"Unable to start the test container from {image}")
        return container_id

    def _run_test_command(self, pwd: str, test_type: str, container_id: str, command: str) -> int:
        if test_type in (ON_HOST, HOST_ONLY):
            return stream_command_exit_code(shlex.split(command), cwd=pwd)

        if test_type == IN_TEST_CONTAINER:
            try:
                result = self.client.containers.get(container_id).exec_run(command)
            except APIError as e:
                logger.error(f"Unable to exec in test container: {e}")
                return 1
            if result.output:
                logger.info(result.output.decode(errors="replace").rstrip())
            return result.exit_code

        if test_type != IN_EXTERNAL_CONTAINER:
            logger.info(
                f"=> Since you didn't specify where to run test {command}, I'll run it in an "
                "external container (attached to the same network)."
            )
        try:
            output = self.client.containers.run(
                TEST_COMMAND_IMAGE,
                command=command,
                network_mode=f"container:{container_id}",
                remove=True,
            )
        except ContainerError as e:
            if e.stderr:
                logger.info(e.stderr.decode(errors="replace").rstrip())
            return e.exit_status
        except APIError as e:
            logger.error(f"Unable to run test container {TEST_COMMAND_IMAGE}: {e}")
            return 1
        if output:
            logger.info(output.decode(errors="replace").rstrip())
        return 0

    def _teardown_test_container(self, container_id: str, keep: bool) -> None:
        if not container_id:
            return
        try:
            container = self.client.containers.get(container_id)
            logger.info("=> Stopping test container.")
            container.stop()
            if keep:
                logger.info("=> Leaving the test container without deleting, like you asked.")
            else:
                logger.info("=> Removing test container.")
                container.remove()
        except NotFound:
            logger.warning(f"Test container {container_id} is already gone")
        except APIError as e:
            logger.error(f"Failed to tear down test container {container_id}: {e}")

    def push(self, ctx: DeployContext) -> None:
        """Push the image, then its cache tag."""
        for ref in (ctx.resolved.image_full_path, ctx.resolved.image_cache_path):
            repository, tag = ref.rsplit(":", 1)
            logger.info(f"=> Pushing {ref}")
            try:
                for line in self.client.images.push(repository, tag=tag, stream=True, decode=True):
                    if "error" in line:
                        raise BuildError(f"Failed to push {ref}: {line['error']}")
                    if line.get("status") and line.get("id") is None:
                        logger.debug(line["status"])
            except APIError as e:
                raise BuildError(f"Failed to push {ref}: {e}")

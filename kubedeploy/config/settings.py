"""
Configuration for kube-deploy.

Two phases: the repository's deploy.yaml plus command-line flags are loaded
first, then everything derived from git and the branch (namespace, image
path, release name, template variables) is computed once into an immutable
ResolvedContext. Nothing is mutated after construction.
"""

import json
import logging
import os
import re
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kubedeploy.naming import app_label, image_tag, release_name, sanitize_branch
from kubedeploy.protocols import ConfigError
from kubedeploy.utils.commands import get_command_output

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "deploy.yaml"
TEMPLATE_WORKDIR = ".kubedeploy-temp"

# branch -> (uses production repository, cluster name, default namespace)
BRANCH_TARGETS: Dict[str, Tuple[bool, str, str]] = {
    "production": (True, "production", "production"),
    "master": (True, "production", "staging"),
    "acceptance": (True, "production", "acceptance"),
    "preview": (True, "production", "preview"),
}
DEFAULT_BRANCH_TARGET: Tuple[bool, str, str] = (False, "development", "development")

# environment -> branch-variable headings that apply to it
ENVIRONMENT_BRANCH_HEADINGS: Dict[str, List[str]] = {
    "production": ["production"],
    "staging": ["master", "staging"],
    "development": ["else", "dev"],
    "acceptance": ["acceptance"],
    "preview": ["preview"],
}

_TEMPLATE_VAR = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DockerRepository(_CamelModel):
    """Where images for this repository are pushed."""

    development_repository_name: str = Field("", alias="developmentRepositoryName")
    production_repository_name: str = Field("", alias="productionRepositoryName")
    branch_repository_name: Dict[str, str] = Field(
        default_factory=dict, alias="branchRepositoryName"
    )
    registry_root: str = Field("", alias="registryRoot")


class KubernetesTemplate(_CamelModel):
    """Template variables, as KEY=VALUE strings."""

    global_variables: List[str] = Field(default_factory=list, alias="globalVariables")
    branch_variables: Dict[str, List[str]] = Field(default_factory=dict, alias="branchVariables")


class Application(_CamelModel):
    """The application being deployed."""

    package_json: bool = Field(False, alias="packageJSON")
    name: str = ""
    version: str = ""
    expose_build_args: bool = Field(False, alias="exposeBuildArgs")
    path_to_kubernetes_files: str = Field("kubernetes", alias="pathToKubernetesFiles")
    kubernetes_template: KubernetesTemplate = Field(
        default_factory=KubernetesTemplate, alias="kubernetesTemplate"
    )


class BuildTestSet(_CamelModel):
    """One group of test commands run against a freshly built image."""

    name: str = ""
    docker_args: str = Field("", alias="dockerArgs")
    docker_command: str = Field("", alias="dockerCommand")
    type: str = ""
    commands: List[str] = Field(default_factory=list)


class RepoConfig(_CamelModel):
    """Contents of a repository's deploy.yaml."""

    docker_repository: DockerRepository = Field(
        default_factory=DockerRepository, alias="dockerRepository"
    )
    application: Application = Field(default_factory=Application)
    image_full_path: Optional[str] = Field(None, alias="imageFullPath")
    namespace: Optional[str] = None
    tests: List[BuildTestSet] = Field(default_factory=list)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RepoConfig":
        """
        Load a deploy.yaml (or JSON) file.

        Raises:
            ConfigError: If the file is missing, unparseable or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            with open(path, "r") as f:
                if path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to parse configuration file {path}: {e}")

        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {path}: {e}")


class ToolSettings(BaseModel):
    """Settings for kube-deploy itself, read from the environment."""

    model_config = ConfigDict(frozen=True)

    lock_dir: str = Field(default_factory=tempfile.gettempdir)
    log_dir: str = Field(
        default_factory=lambda: str(Path.home() / ".local" / "log" / "kube-deploy")
    )
    kube_context: Optional[str] = None
    in_cluster: bool = False
    rollout_timeout: int = Field(600, description="Seconds kubectl waits for a rollout")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ToolSettings":
        """Build settings from KUBEDEPLOY_* environment variables."""
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}
        if env.get("KUBEDEPLOY_LOCK_DIR"):
            values["lock_dir"] = env["KUBEDEPLOY_LOCK_DIR"]
        if env.get("KUBEDEPLOY_LOG_DIR"):
            values["log_dir"] = env["KUBEDEPLOY_LOG_DIR"]
        if env.get("KUBEDEPLOY_KUBE_CONTEXT"):
            values["kube_context"] = env["KUBEDEPLOY_KUBE_CONTEXT"]
        if env.get("KUBEDEPLOY_IN_CLUSTER"):
            values["in_cluster"] = env["KUBEDEPLOY_IN_CLUSTER"].lower() in ("1", "true", "yes")
        if env.get("KUBEDEPLOY_ROLLOUT_TIMEOUT"):
            try:
                values["rollout_timeout"] = int(env["KUBEDEPLOY_ROLLOUT_TIMEOUT"])
            except ValueError:
                raise ConfigError(
                    f"KUBEDEPLOY_ROLLOUT_TIMEOUT must be a number of seconds, "
                    f"got {env['KUBEDEPLOY_ROLLOUT_TIMEOUT']!r}"
                )
        return cls(**values)


class RunOptions(BaseModel):
    """Command-line flags that change how an operation behaves."""

    model_config = ConfigDict(frozen=True)

    force: bool = False
    no_canary: bool = False
    force_push_image: bool = False
    override_dirty_workdir: bool = False
    keep_test_container: bool = False
    keep_template_files: bool = False
    debug: bool = False

    @property
    def skip_canary(self) -> bool:
        """Holds are skipped with --no-canary and with --force."""
        return self.force or self.no_canary


class ResolvedContext(BaseModel):
    """Everything computed from git, the branch and deploy.yaml."""

    model_config = ConfigDict(frozen=True)

    git_branch: str
    git_sha: str
    app_name: str
    version: str
    cluster_name: str
    environment: str
    namespace: str
    docker_repository_name: str
    image_name: str
    image_tag: str
    image_full_path: str
    image_cache_path: str
    release_name: str
    app_label: str
    env_mapping: Dict[str, str] = Field(default_factory=dict)
    pwd: str

    @property
    def template_workdir(self) -> Path:
        return Path(self.pwd) / TEMPLATE_WORKDIR


class DeployContext(BaseModel):
    """The single context value every operation receives."""

    model_config = ConfigDict(frozen=True)

    config: RepoConfig
    resolved: ResolvedContext
    options: RunOptions = Field(default_factory=RunOptions)
    settings: ToolSettings = Field(default_factory=ToolSettings)


def _split_variable(entry: str) -> Tuple[str, str]:
    if "=" not in entry:
        raise ConfigError(f"Template variable {entry!r} is not in KEY=VALUE form")
    key, value = entry.split("=", 1)
    return key.strip(), value


def substitute_variables(mapping: Dict[str, str]) -> Dict[str, str]:
    """
    Expand {{ .KEY }} references inside values using the same mapping.

    Raises:
        ConfigError: If a value references a key that is not defined
    """
    source = dict(mapping)

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in source:
            raise ConfigError(
                f"Failed to do a substitution in one of your template variables: "
                f"{key} is not defined"
            )
        return source[key]

    return {key: _TEMPLATE_VAR.sub(_replace, value) for key, value in source.items()}


def build_env_mapping(
    config: RepoConfig,
    environment: str,
    namespace: str,
    freebies: Dict[str, str],
) -> Dict[str, str]:
    """
    Build the variables exported to manifest templates.

    Global variables come first, then branch variables whose heading names
    one of the environment's branches, then NAMESPACE (unless a variable
    already set it) and the KD_* freebies.
    """
    template = config.application.kubernetes_template
    mapping: Dict[str, str] = {}

    for entry in template.global_variables:
        key, value = _split_variable(entry)
        mapping[key] = value

    headings = ENVIRONMENT_BRANCH_HEADINGS.get(environment, [])
    if headings:
        heading_re = re.compile(f"({'|'.join(re.escape(h) for h in headings)}),?")
        for heading, entries in template.branch_variables.items():
            if heading_re.search(heading):
                for entry in entries or []:
                    key, value = _split_variable(entry)
                    mapping[key] = value

    mapping.setdefault("NAMESPACE", namespace)
    mapping.update(freebies)
    return substitute_variables(mapping)


def read_git_state(cwd: Optional[str] = None) -> Tuple[str, str]:
    """
    Read the current branch and short revision from git.

    Raises:
        ConfigError: If git cannot describe the working directory
    """
    try:
        branch = get_command_output(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
        sha = get_command_output(["git", "rev-parse", "--verify", "--short", "HEAD"], cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise ConfigError(f"Unable to read git state: {e}")
    return branch.strip(), sha.strip()


def read_package_json(path: Union[str, Path]) -> Tuple[str, str]:
    """
    Read the application name and version from package.json.

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(
            f"Config specifies to read from package.json, but reading {path} failed: {e}"
        )
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"Config specifies to read from package.json, but parsing {path} failed: {e}"
        )
    if not isinstance(data, dict):
        raise ConfigError(f"{path} does not contain a JSON object")
    return str(data.get("name", "")), str(data.get("version", ""))


def resolve_context(
    config: RepoConfig,
    git_branch: str,
    git_sha: str,
    pwd: str,
    package_info: Optional[Tuple[str, str]] = None,
) -> ResolvedContext:
    """
    Compute the second-phase context for a repository checkout.

    Args:
        config: Parsed deploy.yaml
        git_branch: Current branch (sanitized here)
        git_sha: Short revision
        pwd: Repository working directory
        package_info: (name, version) from package.json, if configured

    Returns:
        The resolved, immutable context
    """
    branch = sanitize_branch(git_branch)
    app = config.application
    name, version = package_info if package_info else (app.name, app.version)
    if not name:
        raise ConfigError("No application name configured")

    production_repo, cluster_name, environment = BRANCH_TARGETS.get(branch, DEFAULT_BRANCH_TARGET)
    namespace = config.namespace or environment

    repos = config.docker_repository
    if production_repo:
        repository_name = repos.production_repository_name
    else:
        repository_name = repos.development_repository_name
    repository_name = repos.branch_repository_name.get(branch, repository_name)

    tag = image_tag(version, branch, git_sha)
    if config.image_full_path:
        image_name = config.image_full_path
        last_part = image_name.rsplit("/", 1)[-1]
        if ":" in last_part:
            image_name = image_name.rsplit(":", 1)[0]
    elif repos.registry_root:
        image_name = f"{repos.registry_root}/{repository_name}/{name}"
    else:
        # Docker Hub images need no registry root
        image_name = f"{repository_name}/{name}"

    full_path = f"{image_name}:{tag}"
    cache_path = f"{image_name}:{version}-cache"
    release = release_name(name, version, branch, git_sha)
    label = app_label(name, branch)

    env_mapping = build_env_mapping(
        config,
        environment,
        namespace,
        {
            "KD_RELEASE_NAME": release,
            "KD_APP_NAME": label,
            "KD_KUBERNETES_NAMESPACE": namespace,
            "KD_GIT_BRANCH": branch,
            "KD_GIT_SHA": git_sha,
            "KD_IMAGE_FULL_PATH": full_path,
            "KD_IMAGE_TAG": tag,
        },
    )

    return ResolvedContext(
        git_branch=branch,
        git_sha=git_sha,
        app_name=name,
        version=version,
        cluster_name=cluster_name,
        environment=environment,
        namespace=env_mapping["NAMESPACE"],
        docker_repository_name=repository_name,
        image_name=image_name,
        image_tag=tag,
        image_full_path=full_path,
        image_cache_path=cache_path,
        release_name=release,
        app_label=label,
        env_mapping=env_mapping,
        pwd=pwd,
    )


def build_context(
    config_path: Union[str, Path],
    options: RunOptions,
    cwd: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    settings: Optional[ToolSettings] = None,
) -> DeployContext:
    """Load everything an operation needs, once, at process start."""
    pwd = cwd or os.getcwd()
    config = RepoConfig.from_file(Path(pwd) / config_path)
    branch, sha = read_git_state(pwd)
    package_info = None
    if config.application.package_json:
        package_info = read_package_json(Path(pwd) / "package.json")

    resolved = resolve_context(config, branch, sha, pwd, package_info)
    logger.debug(
        f"Resolved release {resolved.release_name} for namespace {resolved.namespace} "
        f"on the {resolved.cluster_name} cluster"
    )
    return DeployContext(
        config=config,
        resolved=resolved,
        options=options,
        settings=settings or ToolSettings.from_env(environ),
    )

#!/usr/bin/env python3
"""
kube-deploy - Main entry point.

Parses the command line, builds the deploy context once and routes the
command to its operation. Every fatal error is a KubeDeployError carrying
its own exit code; a rollout that bailed out after a rejected hold is not
an error.
"""

import argparse
import logging
import sys
from typing import List, Optional

from kubedeploy import __version__
from kubedeploy.build.docker import BuildPipeline
from kubedeploy.config.settings import (
    DEFAULT_CONFIG_PATH,
    DeployContext,
    RunOptions,
    ToolSettings,
    build_context,
)
from kubedeploy.deployment.operations import (
    instant_rollback,
    list_releases,
    remove,
    rolling_restart,
    scale,
    start_rollout,
)
from kubedeploy.hold import HoldSupervisor
from kubedeploy.kube.gateway import KubeGateway
from kubedeploy.logging_config import setup_logging
from kubedeploy.models import RolloutOutcome
from kubedeploy.output import formatter
from kubedeploy.protocols import (
    EXIT_ERROR,
    EXIT_INVALID_ARGS,
    EXIT_SUCCESS,
    KubeDeployError,
)
from kubedeploy.templates import ManifestRenderer
from kubedeploy.utils.commands import KubectlNotFoundError

logger = logging.getLogger("kubedeploy.cli")


def _add_force(parser: argparse.ArgumentParser, help_text: str) -> None:
    parser.add_argument("--force", action="store_true", help=help_text)


def _add_no_canary(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--no-canary", action="store_true", help="Skip the canary hold points (no prompts)"
    )


def _add_build_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--force-push-image",
        action="store_true",
        help="Push the built image without asking",
    )
    parser.add_argument(
        "--override-dirty-workdir",
        action="store_true",
        help="Build for production even with uncommitted changes",
    )
    parser.add_argument(
        "--keep-test-container",
        action="store_true",
        help="Do not remove test containers after the tests run",
    )


def _add_keep_templates(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--keep-kubernetes-template-files",
        action="store_true",
        help="Leave the rendered manifests in .kubedeploy-temp/",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog="kube-deploy",
        description="Canary rollouts of a repository's application onto Kubernetes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Build (if needed) and roll out the current checkout
  kube-deploy rollout

  # Roll back to the previous release in one step
  kube-deploy rollback

  # Show the releases of this application and branch
  kube-deploy list --format json

Environment Variables:
  KUBEDEPLOY_LOCK_DIR         Directory for rollout lock files (default: system temp dir)
  KUBEDEPLOY_LOG_DIR          Directory for log files (default: ~/.local/log/kube-deploy)
  KUBEDEPLOY_AUDIT_LOG        Audit log path (default: ~/.local/log/kube-deploy/audit.jsonl)
  KUBEDEPLOY_KUBE_CONTEXT     kubeconfig context to use
  KUBEDEPLOY_ROLLOUT_TIMEOUT  Seconds to wait for a rollout to become ready (default: 600)
        """,
    )

    # Global arguments
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Repository deploy config (default: ./{DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--debug", action="store_true", help="Verbose logging plus template variable dumps"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # rollout
    rollout_parser = subparsers.add_parser(
        "rollout", help="Build if needed, then roll out through the canary points"
    )
    _add_force(rollout_parser, "Override the rollout lock and skip the canary hold points")
    _add_no_canary(rollout_parser)
    _add_build_flags(rollout_parser)
    _add_keep_templates(rollout_parser)

    # rollback
    rollback_parser = subparsers.add_parser(
        "rollback", help="Swap the live release with the rollback target"
    )
    _add_force(rollback_parser, "Skip the observation hold point")
    _add_no_canary(rollback_parser)

    # rolling-restart
    subparsers.add_parser("rolling-restart", help="Recreate every pod of the live release")

    # scale
    scale_parser = subparsers.add_parser("scale", help="Set the replica count of the live release")
    scale_parser.add_argument("replicas", type=int, help="Desired number of pods")

    # remove
    remove_parser = subparsers.add_parser(
        "remove", help="Delete every object described by the manifests"
    )
    _add_force(remove_parser, "Override the rollout lock")
    _add_keep_templates(remove_parser)

    # list
    list_parser = subparsers.add_parser("list", help="List the releases of this application")
    list_parser.add_argument(
        "--format",
        choices=["table", "json", "yaml"],
        default="table",
        help="Output format (default: table)",
    )

    # build
    build_parser = subparsers.add_parser("build", help="Build, test and push the image only")
    _add_build_flags(build_parser)

    return parser


def options_from_args(args: argparse.Namespace) -> RunOptions:
    """Collect the flags the chosen subcommand defines."""
    return RunOptions(
        force=getattr(args, "force", False),
        no_canary=getattr(args, "no_canary", False),
        force_push_image=getattr(args, "force_push_image", False),
        override_dirty_workdir=getattr(args, "override_dirty_workdir", False),
        keep_test_container=getattr(args, "keep_test_container", False),
        keep_template_files=getattr(args, "keep_kubernetes_template_files", False),
        debug=args.debug,
    )


def configure_logging(args: argparse.Namespace, settings: ToolSettings) -> None:
    """Console plus rotating files; console only if the log directory is unusable."""
    console_level = "DEBUG" if (args.verbose or args.debug) else "INFO"
    try:
        setup_logging(log_dir=settings.log_dir, console_level=console_level)
    except OSError as e:
        logging.basicConfig(
            level=getattr(logging, console_level), format="%(message)s", stream=sys.stdout
        )
        logger.warning(f"Could not set up file logging in {settings.log_dir}: {e}")


def make_gateway(ctx: DeployContext) -> KubeGateway:
    settings = ctx.settings
    return KubeGateway(
        ctx.resolved.namespace,
        context=settings.kube_context,
        in_cluster=settings.in_cluster,
        rollout_timeout=settings.rollout_timeout,
    )


def route_command(ctx: DeployContext, args: argparse.Namespace) -> int:
    """
    Route command to the matching operation.

    Args:
        ctx: Deploy context
        args: Parsed arguments

    Returns:
        Exit code
    """
    if args.command == "build":
        BuildPipeline().build_test_push(ctx)
        return EXIT_SUCCESS

    gateway = make_gateway(ctx)

    if args.command == "rollout":
        outcome = start_rollout(
            ctx, gateway, ManifestRenderer(ctx), BuildPipeline(), HoldSupervisor()
        )
        if outcome != RolloutOutcome.PROMOTED:
            logger.info(f"=> Rollout ended: {outcome.value}.")
        return EXIT_SUCCESS

    elif args.command == "rollback":
        instant_rollback(ctx, gateway, HoldSupervisor())
        return EXIT_SUCCESS

    elif args.command == "rolling-restart":
        rolling_restart(ctx, gateway)
        return EXIT_SUCCESS

    elif args.command == "scale":
        scale(ctx, gateway, args.replicas)
        return EXIT_SUCCESS

    elif args.command == "remove":
        remove(ctx, gateway, ManifestRenderer(ctx))
        return EXIT_SUCCESS

    elif args.command == "list":
        print(formatter.format_releases(list_releases(ctx, gateway), args.format))
        return EXIT_SUCCESS

    print(f"Error: Unknown command: {args.command}", file=sys.stderr)
    return EXIT_INVALID_ARGS


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_SUCCESS

    try:
        settings = ToolSettings.from_env()
        configure_logging(args, settings)
        ctx = build_context(args.config, options_from_args(args), settings=settings)
        return route_command(ctx, args)
    except KubeDeployError as e:
        if e.exit_code == EXIT_SUCCESS:
            logger.info(str(e))
        else:
            logger.error(str(e))
        return e.exit_code
    except KubectlNotFoundError as e:
        logger.error(str(e))
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())

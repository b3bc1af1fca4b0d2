"""Image build, test and push pipeline."""

from kubedeploy.build.docker import BuildPipeline

__all__ = ["BuildPipeline"]

"""Sandbox Runner for user-supplied code (custom code node, custom filter/map/merge)."""

from .runner import SandboxResult, SandboxRunner, run_sandboxed

__all__ = ["SandboxResult", "SandboxRunner", "run_sandboxed"]

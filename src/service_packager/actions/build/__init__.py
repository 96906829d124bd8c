from .runner import render_command, run_local_build

__all__ = ["render_command", "run_local_build"]

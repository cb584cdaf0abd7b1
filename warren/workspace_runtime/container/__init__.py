"""Container runtime layer: Docker adapter, exec stream framing and the shell completion protocol."""

from warren.workspace_runtime.container.adapter import DockerAdapter
from warren.workspace_runtime.container.completion import run_interactive
from warren.workspace_runtime.container.demux import FrameDemuxer, demultiplex
from warren.workspace_runtime.container.shell import ShellSession

__all__ = ["DockerAdapter", "FrameDemuxer", "ShellSession", "demultiplex", "run_interactive"]

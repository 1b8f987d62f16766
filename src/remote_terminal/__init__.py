"""remote-terminal: a web terminal and a shell-running agent for one workspace."""

__version__ = "0.1.0"

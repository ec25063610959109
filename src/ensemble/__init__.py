"""Agent workflow engine with discussion and self-critique protocols."""

__version__ = "0.1.0"

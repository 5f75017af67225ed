"""Secondary-structure collective variables for repeating-unit backbones."""

__version__ = "0.1.0"

"""Command line tooling for pthkit.

Submodules are imported on demand, e.g. ``from pthkit.tools import pth_transfer``;
importing this package alone does not load the safetensors writer.
"""

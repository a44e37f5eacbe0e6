"""Job orchestration and LLM gateway for deal-flow analysis engines."""

from dealflow.__about__ import __version__

__all__ = ["__version__"]

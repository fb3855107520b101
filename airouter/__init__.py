"""airouter - request routing and admission control for AI generation calls."""

__version__ = "0.1.0"

"""Single-session LLM inference: prompt pre-fill, token streaming, and a small HTTP surface."""

__version__ = "0.1.0"

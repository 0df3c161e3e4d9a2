"""LLMule client - share local LLMs with the LLMule network."""

__version__ = "1.0.0"

"""tandem: an agent runtime for tool-using LLM conversations."""

__version__ = "0.1.0"

"""Exception types shared by the agent loop, config loading and the CLI."""


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, missing API key, etc.)."""


class TransportError(AgentError):
    """Raised when a completion request cannot reach the service at all."""


class ContextOverflowError(Exception):
    """Raised when the LLM call fails due to context window overflow."""

    pass

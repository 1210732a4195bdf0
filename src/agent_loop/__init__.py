"""agent-loop: Tool-calling agent turn loop with incremental prompt caching.

Drives multi-turn conversations between a user, a language model and a set
of externally callable tools, reusing the model's KV cache across turns.

Architecture: Hexagonal (Ports & Adapters)
- Domain core: Messages, tool-call records, configuration, error taxonomy
- Ports: Protocol-based interfaces (model backends, tool transports)
- Application: Message store, tool-call assembler, prompt cache, agent loop
- Adapters: Infrastructure bindings (MLX, MCP, pydantic-settings, structlog)
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

"""Domain layer for the agent turn loop.

This package contains pure data structures and the error taxonomy with zero
external dependencies. All domain code uses only Python stdlib (typing,
dataclasses, enum) and internal agent_loop.domain imports.

Modules:
    entities: Conversation entities (Message, ToolCallRecord)
    value_objects: Immutable value objects (AgentConfiguration, ToolSpec, StreamDelta)
    errors: Domain exception hierarchy
"""

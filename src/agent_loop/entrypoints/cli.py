"""CLI entrypoint for the agent loop.

Usage:
    agent-loop chat "What is in my home directory?" --filesystem
    agent-loop chat --server-url https://hf.co/mcp
    agent-loop chat --provider mlx-server "Hello"
    agent-loop config
"""

import asyncio
import json
from pathlib import Path

import typer

from agent_loop import __version__
from agent_loop.adapters.config.logging import configure_logging
from agent_loop.adapters.config.settings import MCPServerSettings, Settings, get_settings
from agent_loop.application.agent import Agent
from agent_loop.application.prompt_cache import PromptCache
from agent_loop.domain.entities import Message, MessageRole
from agent_loop.domain.errors import AgentError

app = typer.Typer(
    name="agent-loop",
    help="Conversational agent over local MLX models and MCP tools",
    add_completion=False,
)

EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}
PROVIDERS = ("mlx", "mlx-server")


def print_message(message: Message) -> None:
    """Print a conversation message by role (system messages are skipped)."""
    if message.role == MessageRole.USER:
        typer.secho("\nUSER:", fg=typer.colors.GREEN, bold=True)
        typer.echo(message.content)
    elif message.role == MessageRole.ASSISTANT:
        if not message.content:
            return
        typer.secho("\nASSISTANT:", fg=typer.colors.BLUE, bold=True)
        typer.echo(message.content)
    elif message.role == MessageRole.TOOL:
        typer.secho(f"\nTOOL [{message.tool_name or 'unknown'}]:", fg=typer.colors.YELLOW, bold=True)
        typer.echo(message.content)


def load_server_file(path: Path) -> list[MCPServerSettings]:
    """Read MCP servers from a JSON file holding a list of server objects."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("servers", [])
    return [MCPServerSettings.model_validate(item) for item in data]


def collect_servers(
    settings: Settings,
    server_urls: list[str],
    servers_file: Path | None,
    filesystem: bool,
) -> list[MCPServerSettings]:
    servers = list(settings.mcp_servers)
    if servers_file is not None:
        servers.extend(load_server_file(servers_file))
    servers.extend(MCPServerSettings.http(url) for url in server_urls)
    if filesystem:
        servers.append(MCPServerSettings.filesystem())
    return servers


async def create_backend(settings: Settings):
    """Build the model backend selected by ``settings.model.provider``."""
    if settings.model.provider == "mlx-server":
        from agent_loop.adapters.outbound.openai_compatible_adapter import OpenAICompatibleBackend

        typer.echo(f"Using {settings.model.model_id} at {settings.model.base_url}")
        return OpenAICompatibleBackend(
            base_url=settings.model.base_url,
            model=settings.model.model_id,
            api_key=settings.model.api_key.get_secret_value(),
            timeout=settings.model.request_timeout,
        )

    # Imported here so `config`, `version` and the mlx-server provider work without MLX installed
    from agent_loop.adapters.outbound.mlx_backend_adapter import MLXGenerationBackend

    typer.echo(f"Loading {settings.model.model_id} ...")
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None, MLXGenerationBackend.load, settings.model.model_id, settings.model.kv_bits
    )


async def run_chat(
    settings: Settings,
    servers: list[MCPServerSettings],
    prompt: str | None,
) -> None:
    from agent_loop.adapters.outbound.mcp_tool_adapter import MCPToolTransport

    backend = await create_backend(settings)

    try:
        async with MCPToolTransport() as transport:
            if servers:
                typer.echo(f"Connecting to {len(servers)} MCP server(s) ...")
                await transport.connect(servers)

            agent = Agent(
                configuration=settings.to_configuration(),
                backend=backend,
                tool_transport=transport,
                prompt_cache=PromptCache(freshness_seconds=settings.agent.cache_freshness_seconds),
            )

            if prompt is not None:
                await agent.run(prompt, on_message=print_message)
                return

            typer.echo("Type /clear to reset the conversation, /stats for cache stats, /exit to quit.")
            while True:
                user_input = await asyncio.to_thread(input, "\n> ")
                user_input = user_input.strip()
                if not user_input:
                    continue
                if user_input in EXIT_COMMANDS:
                    break
                if user_input == "/clear":
                    agent.clear_history()
                    typer.echo("History cleared.")
                    continue
                if user_input == "/stats":
                    stats = agent.cache_stats
                    typer.echo(
                        f"hits={stats.hits} misses={stats.misses} partial={stats.partial_hits} "
                        f"trims={stats.trims} resets={stats.resets} "
                        f"hit_rate={stats.hit_rate:.1%}"
                    )
                    continue

                turns = await agent.run(user_input, on_message=print_message)
                typer.secho(f"({turns} turn(s))", dim=True)
    finally:
        await backend.aclose()


@app.command()
def chat(
    prompt: str = typer.Argument(
        None,
        help="Single message to send (omit for an interactive session)",
    ),
    model: str = typer.Option(
        None,
        "--model",
        "-m",
        help="Model ID (default: from settings)",
    ),
    provider: str = typer.Option(
        None,
        "--provider",
        "-p",
        help="Model backend: mlx or mlx-server (default: from settings)",
    ),
    base_url: str = typer.Option(
        None,
        "--base-url",
        help="API root of the mlx-server provider (default: from settings)",
    ),
    max_turns: int = typer.Option(
        None,
        "--max-turns",
        help="Maximum model turns per message (default: from settings)",
    ),
    temperature: float = typer.Option(
        None,
        "--temperature",
        "-t",
        help="Sampling temperature (default: from settings)",
    ),
    server_url: list[str] = typer.Option(
        None,
        "--server-url",
        help="MCP streamable HTTP server URL (repeatable)",
    ),
    servers_file: Path = typer.Option(
        None,
        "--servers-file",
        exists=True,
        dir_okay=False,
        help="JSON file with a list of MCP server definitions",
    ),
    filesystem: bool = typer.Option(
        False,
        "--filesystem",
        help="Connect the reference MCP file system server (needs npx)",
    ),
    log_level: str = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level (default: from settings)",
    ),
) -> None:
    """Chat with a local model that can call MCP tools.

    Example:
        $ agent-loop chat "Summarize README.md" --filesystem
        $ agent-loop chat --model mlx-community/Qwen3-4B-4bit --server-url https://hf.co/mcp
        $ agent-loop chat --provider mlx-server --base-url http://localhost:8080/v1
    """
    settings = get_settings()

    if model:
        settings.model.model_id = model
    if provider is not None:
        if provider not in PROVIDERS:
            typer.secho(f"Unknown provider: {provider}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=2)
        settings.model.provider = provider
    if base_url:
        settings.model.base_url = base_url
    if max_turns is not None:
        settings.agent.max_turns = max_turns
    if temperature is not None:
        settings.model.temperature = temperature

    configure_logging(log_level or settings.logging.level, settings.logging.json_output)

    try:
        servers = collect_servers(settings, server_url or [], servers_file, filesystem)
    except ValueError as exc:
        typer.secho(f"Invalid MCP server definition: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2) from exc

    try:
        asyncio.run(run_chat(settings, servers, prompt))
    except AgentError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    except (KeyboardInterrupt, EOFError):
        typer.echo()


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"agent-loop v{__version__}")


@app.command()
def config() -> None:
    """Show current configuration."""
    settings = get_settings()

    typer.echo("=" * 60)
    typer.echo("agent-loop - Configuration")
    typer.echo("=" * 60)
    typer.echo()
    typer.echo("[Model]")
    typer.echo(f"  Model ID: {settings.model.model_id}")
    typer.echo(f"  Provider: {settings.model.provider}")
    if settings.model.provider == "mlx-server":
        typer.echo(f"  Base URL: {settings.model.base_url}")
    typer.echo(f"  Temperature: {settings.model.temperature}")
    typer.echo(f"  Top-p: {settings.model.top_p}")
    typer.echo(f"  Max tokens: {settings.model.max_tokens or 'default'}")
    typer.echo(f"  Repetition penalty: {settings.model.repetition_penalty}")
    typer.echo(f"  Repetition context: {settings.model.repetition_context_size}")
    typer.echo(f"  KV bits: {settings.model.kv_bits or 'FP16'}")
    typer.echo()
    typer.echo("[Agent]")
    typer.echo(f"  Max turns: {settings.agent.max_turns}")
    typer.echo(f"  Cache freshness: {settings.agent.cache_freshness_seconds:.0f}s")
    typer.echo(f"  System prompt: {settings.agent.system_prompt}")
    typer.echo()
    typer.echo("[Logging]")
    typer.echo(f"  Level: {settings.logging.level}")
    typer.echo(f"  JSON output: {settings.logging.json_output}")
    typer.echo()
    typer.echo("[MCP Servers]")
    if not settings.mcp_servers:
        typer.echo("  (none)")
    for server in settings.mcp_servers:
        endpoint = server.url or " ".join([server.command or "", *server.args])
        typer.echo(f"  {server.display_name} ({server.type}): {endpoint}")
    typer.echo("=" * 60)


def main() -> None:
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()

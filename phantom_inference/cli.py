import asyncio
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from phantom_inference.core.exceptions import InferenceError
from phantom_inference.core.logging import configure_logging
from phantom_inference.schemas.chat import ChatMessage
from phantom_inference.schemas.generation import GenerationOptions
from phantom_inference.services.inference.ollama_client import OllamaClient

console = Console()
cli_app = typer.Typer(name="phantom-inference", help="Client for a local Ollama inference server")

_state: dict = {"url": None, "model": None}


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


def _make_client() -> OllamaClient:
    return OllamaClient(base_url=_state["url"], default_model=_state["model"])


def _call(action):
    """Run `action(client)` on a fresh client; inference errors exit with code 1."""
    async def _go():
        async with _make_client() as client:
            return await action(client)

    try:
        return _run_async(_go())
    except InferenceError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(code=1)


def _format_size(size: int) -> str:
    if size >= 1024**3:
        return f"{size / 1024**3:.1f} GB"
    if size >= 1024**2:
        return f"{size / 1024**2:.1f} MB"
    return f"{size} B"


def _build_options(
    temperature: float | None,
    top_p: float | None,
    top_k: int | None,
    max_tokens: int | None,
    stop: list[str] | None,
) -> GenerationOptions:
    return GenerationOptions(
        temperature=temperature,
        top_p=top_p,
        top_k=top_k,
        max_tokens=max_tokens,
        stop=stop or None,
    )


@cli_app.callback()
def main_callback(
    url: str = typer.Option(None, "--url", help="Base URL of the Ollama server"),
    model: str = typer.Option(None, "--model", "-m", help="Model to use instead of the configured default"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Emit debug logs on stderr"),
):
    _state["url"] = url
    _state["model"] = model
    configure_logging("debug" if verbose else "error", "console", stream=sys.stderr)


@cli_app.command("status")
def status():
    """Check whether the Ollama server is running."""
    result = _call(lambda client: client.get_status())

    if not result.running:
        console.print("[bold red]Ollama is not running.[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"[bold green]Ollama {result.version} is running[/bold green]")
    console.print(f"  Models: {len(result.models_loaded)}")
    for name in result.models_loaded:
        console.print(f"    {name}")


@cli_app.command("models")
def models():
    """List models available on the server."""
    descriptors = _call(lambda client: client.list_model_descriptors())

    if not descriptors:
        console.print("[dim]No models found.[/dim]")
        return

    table = Table(title="Available Models")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Params")
    table.add_column("Digest", style="dim")
    table.add_column("Modified")

    for model in descriptors:
        table.add_row(
            model.name,
            _format_size(model.size),
            model.parameter_size or "-",
            model.digest[:12],
            model.modified_at[:10] or "-",
        )

    console.print(table)


@cli_app.command("running")
def running():
    """List models currently loaded in server memory."""
    names = _call(lambda client: client.list_running_models())
    if not names:
        console.print("[dim]No models loaded.[/dim]")
        return
    for name in names:
        console.print(name)


@cli_app.command("show")
def show(name: str = typer.Argument(help="Model name, e.g. llava:13b")):
    """Print the server's metadata for a model."""
    info = _call(lambda client: client.get_model_info(name))
    console.print_json(data=info, default=str)


@cli_app.command("pull")
def pull(name: str = typer.Argument(help="Model name to download")):
    """Download a model, showing progress."""
    with Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    ) as progress:
        task = progress.add_task(f"Pulling {name}", total=1.0)
        ok = _call(lambda client: client.pull_model(name, lambda f: progress.update(task, completed=f)))

    if not ok:
        console.print(f"[yellow]Pull of '{name}' ended before completing.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[bold green]Pulled {name}.[/bold green]")


@cli_app.command("delete")
def delete(name: str = typer.Argument(help="Model name to remove")):
    """Delete a model from the server."""
    _call(lambda client: client.delete_model(name))
    console.print(f"[bold red]Deleted {name}.[/bold red]")


@cli_app.command("generate")
def generate(
    prompt: str = typer.Argument(help="Prompt text"),
    stream: bool = typer.Option(False, "--stream", help="Print tokens as they arrive"),
    temperature: float = typer.Option(None, "--temperature", min=0.0, max=2.0),
    top_p: float = typer.Option(None, "--top-p", min=0.0, max=1.0),
    top_k: int = typer.Option(None, "--top-k", min=1),
    max_tokens: int = typer.Option(None, "--max-tokens", min=1),
    stop: list[str] = typer.Option(None, "--stop", help="Stop sequence (repeatable)"),
):
    """Run a single-turn text completion."""
    options = _build_options(temperature, top_p, top_k, max_tokens, stop)

    if stream:
        _call(lambda client: client.stream(prompt, lambda token: console.out(token, end=""), options=options))
        console.out("")
        return

    text = _call(lambda client: client.complete(prompt, options=options))
    console.out(text)


@cli_app.command("chat")
def chat(
    message: str = typer.Argument(help="User message"),
    system: str = typer.Option(None, "--system", help="Optional system prompt"),
    temperature: float = typer.Option(None, "--temperature", min=0.0, max=2.0),
):
    """Send a one-message conversation and print the reply."""
    messages = []
    if system:
        messages.append(ChatMessage(role="system", content=system))
    messages.append(ChatMessage(role="user", content=message))
    options = GenerationOptions(temperature=temperature)

    reply = _call(lambda client: client.chat(messages, options=options))
    console.out(reply)


@cli_app.command("analyze")
def analyze(
    image: Path = typer.Argument(help="Image file", exists=True, dir_okay=False, readable=True),
    prompt: str = typer.Argument(help="Instruction for the vision model"),
):
    """Ask a vision model about an image."""
    image_bytes = image.read_bytes()
    text = _call(lambda client: client.analyze(image_bytes, prompt))
    console.out(text)


@cli_app.command("embed")
def embed(
    text: str = typer.Argument(help="Text to embed"),
    embedding_model: str = typer.Option(None, "--embedding-model", help="Embedding model override"),
):
    """Print the embedding vector for a piece of text."""
    vector = _call(lambda client: client.embed(text, embedding_model))
    preview = ", ".join(f"{v:.4f}" for v in vector[:8])
    console.print(f"dimensions: {len(vector)}")
    console.print(f"[{preview}{', …' if len(vector) > 8 else ''}]", markup=False)


def main():
    cli_app()


if __name__ == "__main__":
    main()

"""
Zassha command-line client.

Uploads screen recordings to a Zassha server, streams the analysis back and prints the
timestamped breakdown. `serve` runs the API itself.
"""

from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from zassha.client import AnalysisFailed, UploadFailed, ZasshaClient

load_dotenv()

app = typer.Typer(
    name="zassha",
    help="Explain screen recordings step by step",
    rich_markup_mode="rich",
)

console = Console()

DEFAULT_SERVER = "http://localhost:8000/api"


@app.command()
def serve(
    host: Annotated[str, typer.Option(help="Interface to bind")] = "0.0.0.0",
    port: Annotated[int, typer.Option(help="Port to listen on")] = 8000,
    reload: Annotated[bool, typer.Option(help="Reload on code changes")] = False,
):
    """Run the Explain API with uvicorn."""
    import uvicorn

    uvicorn.run("zassha.main:app", host=host, port=port, reload=reload)


@app.command()
def health(
    server: Annotated[str, typer.Option("--server", "-s", help="API base URL")] = DEFAULT_SERVER,
):
    """Show whether the server has a model key and ffmpeg, plus its upload settings."""
    with ZasshaClient(server) as client:
        info = client.health()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Gemini key", "[green]yes[/green]" if info.get("hasGemini") else "[red]missing[/red]")
    table.add_row("ffmpeg", "[green]yes[/green]" if info.get("hasFfmpeg") else "[yellow]missing[/yellow]")
    for key, value in (info.get("config") or {}).items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def analyze(
    files: Annotated[list[Path], typer.Argument(help="Video files to analyse", exists=True, dir_okay=False)],
    server: Annotated[str, typer.Option("--server", "-s", help="API base URL")] = DEFAULT_SERVER,
    mode: Annotated[str, typer.Option("--mode", "-m", help="summary or detail")] = "detail",
    lang: Annotated[str, typer.Option("--lang", "-l", help="en or ja")] = "en",
    hint: Annotated[Optional[str], typer.Option("--hint", help="Optional context for the model (max 160 chars)")] = None,
    output_dir: Annotated[
        Optional[Path],
        typer.Option("-o", "--output-dir", help="Write each result to <name>.md here"),
    ] = None,
):
    """Upload and analyse each file in turn."""
    failures = 0
    with ZasshaClient(server) as client:
        for path in files:
            console.rule(f"[bold]{path.name}[/bold]")
            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Analysing", total=100)
                try:
                    result = client.analyze(
                        path,
                        mode=mode,
                        lang=lang,
                        hint=hint or "",
                        on_progress=lambda value: progress.update(task, completed=value),
                    )
                except (AnalysisFailed, UploadFailed) as exc:
                    failures += 1
                    console.print(f"[red bold]✗[/red bold] {exc}")
                    continue

            console.print(Markdown(result.text))
            if result.tokens:
                console.print(
                    f"[magenta]⚡[/magenta] Tokens: {result.tokens.input_tokens:,} in, "
                    f"{result.tokens.output_tokens:,} out, {result.tokens.total_tokens:,} total"
                )
            if output_dir:
                output_dir.mkdir(parents=True, exist_ok=True)
                target = output_dir / f"{path.stem}.md"
                target.write_text(result.text, encoding="utf-8")
                console.print(f"[green]✓[/green] Saved {target}")

    if failures:
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()

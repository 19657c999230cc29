"""Shared rich console, prompt style and output redaction."""

import re

from questionary import Style
from rich.console import Console
from rich.panel import Panel

console = Console()

PROMPT_STYLE = Style([
    ('qmark', 'fg:cyan bold'),
    ('question', 'bold'),
    ('answer', 'fg:cyan'),
    ('pointer', 'fg:cyan bold'),
    ('highlighted', 'fg:cyan bold'),
    ('selected', 'fg:cyan'),
])

REDACTIONS = [
    (re.compile(r"AKIA[A-Z0-9]{16}"), "AKIA************"),
    (re.compile(r'("api_?key(?:_?secret)?"\s*:\s*")[^"]*(")', re.I), r"\1****REDACTED****\2"),
    (re.compile(r"(aws_secret_access_key\s*=\s*)\S+", re.I), r"\1****REDACTED****"),
    (re.compile(r"(?<![A-Za-z0-9/+=])[A-Za-z0-9/+=]{40}(?![A-Za-z0-9/+=])"), "****REDACTED****"),
]


def redact(text: str) -> str:
    """Mask AWS key ids, 40-character secrets and API key values."""
    for pattern, replacement in REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def stage_banner(title: str, subtitle: str | None = None):
    body = f"[bold]{title}[/bold]"
    if subtitle:
        body += f"\n[dim]{subtitle}[/dim]"
    console.print(Panel(body, border_style="cyan"))


def success(message: str):
    console.print(f"[green]✓ {message}[/green]")


def warning(message: str):
    console.print(f"[yellow]⚠ {message}[/yellow]")


def failure(message: str):
    console.print(f"[red]❌ {message}[/red]")

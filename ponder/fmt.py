"""Progress output on stderr (rich), kept apart from the answer on stdout."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

_PREVIEW_LINES = 12


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Rebuild the shared console for --color / --no-color, before anything is printed."""
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def setup_logging(level: str = "warning") -> None:
    """Route the ``ponder`` logger hierarchy through a RichHandler on stderr."""
    logger = logging.getLogger("ponder")
    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)
    handler = RichHandler(
        console=_console, show_path=False, rich_tracebacks=False, markup=False
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False


# -- Step structure ----------------------------------------------------------


def step_header(n: int, max_n: int, token_est: int | None = None) -> None:
    title = f"Step {n}/{max_n}"
    if token_est is not None:
        title += f" (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float) -> None:
    _console.print(Text(f"  model responded in {elapsed:.1f}s", style="green"))


def llm_spinner(label: str = "Thinking"):
    """Spinner shown while waiting on the model."""
    return _console.status(f"  {label}", spinner="dots")


def completion(steps: int, status: str) -> None:
    if status == "Finished":
        _console.print(
            Text(f"  ✓ Finished after {steps} steps", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Finished after {steps} steps, status={status}", style="bold yellow")
        )


def mode_info(mode: str, reason: str = "") -> None:
    line = Text()
    line.append(f"  [mode] {mode}", style="cyan")
    if reason:
        line.append(f"  {reason}", style="dim")
    _console.print(line)


# -- Reasoning ---------------------------------------------------------------


def thought(text: str) -> None:
    line = Text()
    line.append("  [thought] ", style="yellow")
    line.append(text, style="dim italic")
    _console.print(line)


def action(name: str, params_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if params_json:
        for line in params_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def observation(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    lines = preview.splitlines()
    for line in lines[:_PREVIEW_LINES]:
        _console.print(Text(f"    {line}", style="dim"))
    if len(lines) > _PREVIEW_LINES:
        _console.print(
            Text(f"    ... {len(lines) - _PREVIEW_LINES} more lines", style="dim")
        )


def observation_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def recovery(errors: int) -> None:
    line = Text()
    line.append("  ⚠ Recovery: ", style="bold yellow")
    line.append(
        f"{errors} consecutive tool failures, asking the model to change approach",
        style="yellow",
    )
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def table_line(label: str, detail: str) -> None:
    line = Text()
    line.append(f"  {label}", style="bold")
    if detail:
        line.append(f"  {detail}", style="dim")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )

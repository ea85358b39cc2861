"""Vibe Soundtrack — entry point. Plays generated music until Ctrl+C."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich import print as rprint

from vibetrack.backends import get_backend, list_backends
from vibetrack.config import DEFAULT_GENRE, SOUNDTRACK_BACKEND
from vibetrack.engine import SessionEngine
from vibetrack.preflight import run_preflight
from vibetrack.storage import ClipStore
from vibetrack.utils import fmt_time

console = Console()


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Endless generated background music for coding.")
    p.add_argument("--genre", default=DEFAULT_GENRE, help=f"music genre (default: {DEFAULT_GENRE!r})")
    p.add_argument("--backend", default=SOUNDTRACK_BACKEND, choices=list_backends())
    p.add_argument("--source", type=Path, help="source file whose code shapes the prompt")
    p.add_argument("--lyrical", action="store_true", help="ask for vocals instead of instrumental")
    p.add_argument("-v", "--verbose", action="store_true")
    return p.parse_args(argv)


async def main(args: argparse.Namespace) -> int:
    if not await run_preflight(args.backend):
        return 1

    source_text = ""
    if args.source:
        try:
            source_text = args.source.read_text(errors="replace")
        except OSError as e:
            console.print(f"  [red]Couldn't read {args.source}: {e}[/red]")
            return 1

    store = ClipStore()
    engine = SessionEngine(get_backend(args.backend, store), instrumental=not args.lyrical)

    console.print(f"  [dim]Generating the first {args.genre} clip…[/dim]")
    outcome = await engine.start(args.genre, source_text)
    if not outcome.ok:
        console.print(f"  [red]✗ {outcome.kind}:[/red] {outcome.message}")
        store.close()
        return 1

    console.print(f"  [bold cyan]♪[/bold cyan]  Now playing [bold]{args.genre}[/bold] — Ctrl+C to stop")
    try:
        while engine.running:
            await asyncio.sleep(1)
            snap = engine.snapshot()
            flag = " · generating next" if snap["generating"] else ""
            console.print(
                f"  [dim]{snap['state']} {fmt_time(snap['elapsed'])}/{fmt_time(snap['duration'])}"
                f" · clip {snap['clips_played']}{flag}[/dim]",
                end="\r",
            )
    finally:
        await engine.stop()
        store.close()
    return 0


if __name__ == "__main__":
    args = _parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    try:
        sys.exit(asyncio.run(main(args)))
    except KeyboardInterrupt:
        rprint("\n\n  [bold]Soundtrack stopped.[/bold] Goodbye.\n")
        sys.exit(0)

"""Module 7b — Startup Preflight Check"""
from rich.console import Console

from .config import APP_VERSION, PIAPI_KEY, STABLE_AUDIO_KEY

console = Console()

_KEYS = {
    "stable": ("STABLE_AUDIO_KEY", STABLE_AUDIO_KEY),
    "piapi": ("PIAPI_KEY", PIAPI_KEY),
}


async def run_preflight(backend: str) -> bool:
    """
    Run all startup checks. Print results. Return True only if ALL pass.
    """
    console.print(f"\n  [bold]♪  Vibe Soundtrack v{APP_VERSION}[/bold] — preflight check\n")

    checks = [
        ("Python deps", _check_python_deps),
        ("API key", lambda: _check_api_key(backend)),
        ("libVLC", _check_vlc),
    ]

    results = []
    for i, (label, fn) in enumerate(checks, 1):
        ok, msg, fix = await fn()
        results.append((ok, label, msg, fix))
        icon = "[green]✓[/green]" if ok else "[red]✗[/red]"
        dots = "." * max(30 - len(label), 3)
        status = f"[green]{msg}[/green]" if ok else f"[red]{msg}[/red]"
        console.print(f"  [{i}/{len(checks)}] {label} {dots} {icon} {status}")

    failures = [(label, fix) for ok, label, _, fix in results if not ok and fix]
    if failures:
        console.print("")
        for label, fix in failures:
            console.print(f"  [yellow]Fix for {label}:[/yellow]")
            for line in fix.strip().splitlines():
                console.print(f"    {line}")
            console.print("")
        return False

    console.print("")
    return True


async def _check_python_deps() -> tuple[bool, str, str]:
    missing = []
    versions = []
    try:
        import httpx as hx
        versions.append(f"httpx {hx.__version__}")
    except ImportError:
        missing.append("httpx")

    try:
        import dotenv  # noqa: F401
        versions.append("python-dotenv")
    except ImportError:
        missing.append("python-dotenv")

    if missing:
        return False, f"missing: {', '.join(missing)}", "Run: pip install -e ."
    return True, ", ".join(versions), ""


async def _check_api_key(backend: str) -> tuple[bool, str, str]:
    if backend not in _KEYS:
        return False, f"unknown backend '{backend}'", "Use --backend stable or --backend piapi"
    env_name, value = _KEYS[backend]
    if not value or value == "your_api_key_here":
        return False, f"{env_name} missing", f"Add {env_name}=... to .env"
    return True, f"{env_name} set", ""


async def _check_vlc() -> tuple[bool, str, str]:
    try:
        import vlc
        version = vlc.libvlc_get_version().decode()
    except (ImportError, OSError, NotImplementedError, AttributeError) as e:
        return False, f"not available ({e.__class__.__name__})", "Install VLC: https://www.videolan.org/vlc/"
    return True, version, ""

"""CLI entry point: open a page and report the window/viewport size it got."""

import argparse
import asyncio
import base64
import logging
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

import console as console_output
from browser import (
    Browser,
    BrowserConfig,
    BrowserContextConfig,
    BrowserError,
    browser_config_from_env,
    context_config_from_env,
)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check how a browser context resolves window and viewport size")
    parser.add_argument("url", help="URL to open")
    parser.add_argument("--width", type=int, default=None, help="Requested width (default: BROWSER_WINDOW_WIDTH or 1280)")
    parser.add_argument("--height", type=int, default=None, help="Requested height (default: BROWSER_WINDOW_HEIGHT or 1100)")
    parser.add_argument(
        "--no-viewport",
        action="store_true",
        help="Apply the size to the outer window and let the engine derive the viewport",
    )
    parser.add_argument(
        "--compare",
        action="store_true",
        help="Run both sizing modes, one context each",
    )
    parser.add_argument(
        "--no-headless",
        action="store_true",
        help="Run browser in visible (non-headless) mode",
    )
    parser.add_argument(
        "--screenshot",
        metavar="PATH",
        default=None,
        help="Save an annotated screenshot of each context (mode is appended to the file name)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    return parser.parse_args()


def _screenshot_path(base: str, no_viewport: bool) -> Path:
    path = Path(base)
    suffix = "window" if no_viewport else "viewport"
    return path.with_name(f"{path.stem}_{suffix}{path.suffix or '.png'}")


def _context_configs(args: argparse.Namespace) -> list[BrowserContextConfig]:
    """One context config per sizing mode to probe.

    Raises:
        ValueError: If the environment or the size arguments are invalid
    """
    modes = [False, True] if args.compare else [args.no_viewport]
    overrides = {}
    if args.width is not None:
        overrides["window_width"] = args.width
    if args.height is not None:
        overrides["window_height"] = args.height
    return [context_config_from_env(no_viewport=no_viewport, **overrides) for no_viewport in modes]


async def _probe(browser: Browser, args: argparse.Namespace, config: BrowserContextConfig) -> bool:
    """Open one context, navigate and print its geometry. Returns True if sizes match."""
    console_output.probe_start(args.url, config)
    async with await browser.new_context(config) as context:
        page = await context.get_current_page()
        await page.goto(args.url)
        geometry = await context.measure_geometry(page)
        console_output.geometry_report(config, context.plan, geometry)

        if args.screenshot:
            path = _screenshot_path(args.screenshot, config.no_viewport)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(base64.b64decode(await page.screenshot_base64(annotate=True)))
            console_output.console.print(f"  [dim]screenshot: {path}[/dim]")

        return console_output.matches_request(config, geometry)


async def _run(args: argparse.Namespace, config: BrowserConfig, context_configs: list[BrowserContextConfig]) -> bool:
    async with Browser(config) as browser:
        results = [await _probe(browser, args, context_config) for context_config in context_configs]
    if browser.teardown_error:
        console_output.probe_warning(str(browser.teardown_error))
    return all(results)


def main() -> None:
    load_dotenv()

    args = _parse_args()

    run_dir = Path("logs")
    run_dir.mkdir(parents=True, exist_ok=True)
    log_file = run_dir / f"probe_{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}.txt"

    log_format = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"
    log_datefmt = "%H:%M:%S"

    # Set up logging to file only (console output via Rich)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if args.verbose else logging.INFO)

    file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(log_format, datefmt=log_datefmt))
    root_logger.addHandler(file_handler)

    try:
        config = browser_config_from_env(headless=not args.no_headless)
        context_configs = _context_configs(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        matched = asyncio.run(_run(args, config, context_configs))
    except KeyboardInterrupt:
        console_output.console.print("\n[yellow]Interrupted by user (Ctrl+C)[/yellow]")
        sys.exit(130)  # Standard exit code for Ctrl+C
    except BrowserError as e:
        logging.exception("Probe failed")
        console_output.result_fail(f"{type(e).__name__}: {e}")
        sys.exit(1)

    if matched:
        console_output.result_success(f"Sizes match the request. Log: {log_file}")
    else:
        console_output.result_fail(f"Sizes differ beyond tolerance. Log: {log_file}")
        sys.exit(1)


if __name__ == "__main__":
    main()

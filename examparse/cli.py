"""
CLI Interface
=============
Command-line interface for the exam parser engine.

Usage:
    python -m examparse parse <pdf_path> [options]
    python -m examparse batch <directory> [options]
    python -m examparse info <pdf_path>
"""

from __future__ import annotations

import json
import os
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table

from . import __version__
from .engine import FAILURE_PREFIX, ParserConfig, ParserEngine
from .models import DetectorConfig
from .text_layer import DocumentOpenError, PdfDocument

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="examparse")
def cli():
    """Exam Parser: recovers question structure and course metadata from exam PDFs."""
    pass


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
@click.option(
    "--output", "-o",
    default=None,
    help="Output directory for the parsed JSON (not saved if omitted)",
)
@click.option(
    "--deep-ocr",
    is_flag=True,
    default=False,
    help="Allow the slow high-resolution OCR stage",
)
@click.option(
    "--ocr-lang",
    default="swe+eng",
    help="Tesseract language hints",
)
@click.option(
    "--tesseract-cmd",
    default=None,
    help="Path to the tesseract binary",
)
@click.option(
    "--time-budget",
    default=None,
    type=float,
    help="Wall-clock budget in seconds, checked between pages",
)
@click.option(
    "--score-threshold",
    default=2,
    type=int,
    help="Minimum heading score for a main question",
)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Include the detection trace in the output",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option(
    "--log-file",
    default=None,
    help="Path to log file",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Output only JSON result to stdout (for programmatic use)",
)
def parse(
    pdf_path: str,
    output: str,
    deep_ocr: bool,
    ocr_lang: str,
    tesseract_cmd: str,
    time_budget: float,
    score_threshold: int,
    debug: bool,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Parse a single exam PDF."""

    if json_output:
        # Suppress console output for JSON mode
        log_level = "ERROR"

    config = ParserConfig(
        detector=DetectorConfig(score_threshold=score_threshold),
        deep_ocr=deep_ocr,
        ocr_lang=ocr_lang,
        tesseract_cmd=tesseract_cmd,
        time_budget=time_budget,
        output_dir=output,
        log_level=log_level,
        log_file=log_file,
        debug=debug,
    )
    engine = ParserEngine(config)

    if json_output:
        result = engine.parse(pdf_path)
        print(json.dumps(result.model_dump(mode="json"), indent=2, ensure_ascii=False))
        if result.extracted_text.startswith(FAILURE_PREFIX):
            sys.exit(1)
        return

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Exam Parser v{__version__}[/]\n"
            f"[dim]Parsing: {os.path.basename(pdf_path)}[/]",
            border_style="cyan",
        )
    )
    console.print()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Reading pages...", total=None)

        def on_page(current: int, total: int):
            progress.update(task, completed=current, total=total)

        result = engine.parse(pdf_path, progress_callback=on_page)

    if result.extracted_text.startswith(FAILURE_PREFIX):
        console.print(f"[red]Error:[/] {result.extracted_text}")
        sys.exit(1)

    _display_results(result)


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--output", "-o", default="output", help="Output directory")
@click.option("--deep-ocr", is_flag=True, default=False, help="Allow deep OCR")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.option(
    "--parallel", "-j",
    default=1,
    type=int,
    help="Number of parallel parse workers (1 = sequential)",
)
def batch(
    directory: str,
    output: str,
    deep_ocr: bool,
    log_level: str,
    parallel: int,
):
    """Batch parse all PDFs in a directory."""

    pdf_files = sorted(Path(directory).glob("*.pdf"))

    if not pdf_files:
        console.print(f"[yellow]No PDF files found in: {directory}[/]")
        return

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Batch Exam Parser[/]\n"
            f"[dim]Found {len(pdf_files)} PDFs in: {directory}[/]",
            border_style="cyan",
        )
    )
    console.print()

    config = ParserConfig(output_dir=output, deep_ocr=deep_ocr, log_level=log_level)

    def parse_one(pdf_file: Path):
        # One engine per PDF: parses share nothing
        return ParserEngine(config).parse(str(pdf_file))

    results = []
    errors = []

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeRemainingColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Processing PDFs...", total=len(pdf_files))

        with ThreadPoolExecutor(max_workers=max(1, parallel)) as pool:
            futures = {pool.submit(parse_one, f): f for f in pdf_files}
            for future in as_completed(futures):
                pdf_file = futures[future]
                progress.update(task, description=f"Parsed: {pdf_file.name}")
                result = future.result()
                if result.extracted_text.startswith(FAILURE_PREFIX):
                    errors.append((pdf_file.name, result.extracted_text))
                else:
                    results.append((pdf_file.name, result))
                progress.advance(task)

    results.sort(key=lambda r: r[0])
    _display_batch_summary(results, errors)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
def info(pdf_path: str):
    """Display PDF file information."""

    try:
        document = PdfDocument(pdf_path)
    except DocumentOpenError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    with document:
        text_chars = 0
        pages_with_text = 0
        for page in range(1, document.page_count + 1):
            n = len(document.page_text(page).strip())
            text_chars += n
            pages_with_text += 1 if n else 0

        console.print()
        table = Table(title="PDF Information", border_style="cyan")
        table.add_column("Property", style="bold")
        table.add_column("Value")

        table.add_row("File", os.path.basename(pdf_path))
        table.add_row("Pages", str(document.page_count))
        table.add_row(
            "File Size",
            f"{os.path.getsize(pdf_path) / 1024 / 1024:.2f} MB",
        )
        table.add_row("Pages With Text Layer", str(pages_with_text))
        table.add_row("Text Layer Characters", str(text_chars))
        table.add_row(
            "Likely Scanned",
            "yes" if pages_with_text == 0 else "no",
        )

    console.print(table)
    console.print()


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_results(result):
    """Display parse results in formatted tables."""
    console.print()

    table = Table(title="Exam Information", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("File", result.file_name)
    table.add_row("Course Code", result.course_code or "(not found)")
    table.add_row("Course Name", result.course_name or "(not found)")
    table.add_row("Exam Date", str(result.exam_date) if result.exam_date else "-")
    table.add_row("Year", str(result.year) if result.year else "-")
    table.add_row("Stage", result.stage.value if result.stage else "(none)")
    table.add_row("Total Points", str(result.total_points))
    console.print(table)
    console.print()

    if result.questions:
        q_table = Table(title="Questions", border_style="magenta")
        q_table.add_column("#", style="bold")
        q_table.add_column("Points", justify="right")
        q_table.add_column("Page", justify="right")
        q_table.add_column("Confidence", justify="right")
        for q in result.questions:
            q_table.add_row(
                q.number,
                str(q.points) if q.points else "-",
                str(q.page) if q.page else "-",
                f"{q.confidence}%" if q.confidence is not None else "-",
            )
        console.print(q_table)
        console.print()

    if result.validation:
        _display_validation_table(result.validation.model_dump())


def _display_validation_table(validation: dict):
    """Display the detection report as a rich table."""
    table = Table(title="Detection Report", border_style="green")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Status", justify="center")

    def status_icon(count, threshold=0):
        if count <= threshold:
            return "[green]✓[/]"
        return "[red]✗[/]"

    total = validation.get("total_tokens", 0)
    table.add_row(
        "Total Tokens Detected",
        f"{total} ({validation.get('main_count', 0)} mains, "
        f"{validation.get('sub_count', 0)} subs)",
        "[green]✓[/]" if total > 0 else "[red]✗[/]",
    )

    coverage = validation.get("points_coverage", 0)
    table.add_row(
        "Points Coverage",
        f"{coverage}%",
        "[green]✓[/]" if coverage >= 90 else "[yellow]⚠[/]",
    )

    missing = validation.get("missing_main_numbers", [])
    table.add_row("Missing Main Numbers", str(len(missing)), status_icon(len(missing)))

    low = validation.get("low_confidence_tokens", [])
    table.add_row("Low-Confidence Tokens", str(len(low)), status_icon(len(low)))

    dupes = validation.get("tokens_with_duplicates", [])
    table.add_row("Tokens Seen More Than Once", str(len(dupes)), "[dim]-[/]")

    table.add_row("Total Points", str(validation.get("total_points", 0)), "[dim]-[/]")

    console.print(table)
    console.print()


def _display_batch_summary(results, errors):
    """Display batch processing summary."""
    console.print()

    table = Table(title="Batch Processing Summary", border_style="cyan")
    table.add_column("PDF", style="bold")
    table.add_column("Course", justify="left")
    table.add_column("Questions", justify="right")
    table.add_column("Points", justify="right")
    table.add_column("Stage", justify="left")
    table.add_column("Status", justify="center")

    total_questions = 0

    for name, result in results:
        q_count = len(result.questions)
        total_questions += q_count
        table.add_row(
            name,
            result.course_code or "-",
            str(q_count),
            str(result.total_points),
            result.stage.value if result.stage else "-",
            "[green]✓[/]" if q_count else "[yellow]⚠[/]",
        )

    for name, _error in errors:
        table.add_row(name, "-", "-", "-", "-", "[red]✗ FAILED[/]")

    console.print(table)
    console.print()
    console.print(
        f"[bold]Total:[/] {total_questions} questions from "
        f"{len(results)} PDFs, {len(errors)} failures"
    )
    console.print()


# ─── Entry point (for python -m examparse.cli) ────────────────────────────────


if __name__ == "__main__":
    cli()

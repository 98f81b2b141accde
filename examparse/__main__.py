"""
Module entry point for: python -m examparse

Allows running the parser directly as a module:
    python -m examparse parse <pdf_path> [options]
    python -m examparse batch <directory> [options]
    python -m examparse info <pdf_path>
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()

"""CLI entry point for the up/down trading engine.

All command logic lives in the cli subpackage.
"""

from updown_engine.apps.cli import app

__all__ = ["app", "main"]


def main() -> None:
    """Run the engine CLI application."""
    app()


if __name__ == "__main__":
    main()

"""Allow `python -m mention_relay` to invoke the CLI entry-point."""

from .cli import app


def main() -> None:
    app(prog_name="mention-relay")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()

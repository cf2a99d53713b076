"""Entry point for running urlrelay directly."""

from .cli import run_server


def main():
    """Run the relay server."""
    run_server()


if __name__ == "__main__":
    main()

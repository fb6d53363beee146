"""CLI entry point for python -m convpipe"""
from convpipe.cli.commands import app

if __name__ == "__main__":
    app()
